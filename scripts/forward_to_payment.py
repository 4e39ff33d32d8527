from __future__ import annotations

import argparse
import os
import sys

from dotenv import load_dotenv
from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client


def payment_twiml(payment_number: str, timeout: int = 20) -> str:
    # The pause keeps the call up briefly if the dial fails immediately.
    return (
        f'<Response><Dial timeout="{timeout}">{payment_number}</Dial>'
        '<Pause length="5"/></Response>'
    )


def forward_calls(client: Client, payment_number: str, limit: int = 100) -> int:
    """Forward every in-progress call to the payment line. Returns the number forwarded."""
    calls = client.calls.list(status="in-progress", limit=limit)
    if not calls:
        print("No active calls found.")
        return 0

    print(f"Found {len(calls)} active calls.")
    forwarded = 0
    twiml = payment_twiml(payment_number)
    for call in calls:
        print(f"Forwarding call SID: {call.sid} to the payment gateway...")
        try:
            client.calls(call.sid).update(twiml=twiml, method="POST")
        except TwilioRestException as e:
            print(f"Failed to forward call SID: {call.sid} - {e.msg}", file=sys.stderr)
            continue
        forwarded += 1
        print(f"Call SID: {call.sid} successfully forwarded to payment gateway.")

    print("All calls have been processed.")
    return forwarded


def main() -> int:
    load_dotenv()

    parser = argparse.ArgumentParser(description="Forward all in-progress calls to the payment line.")
    parser.add_argument(
        "--number",
        default=os.getenv("PAYMENT_NUMBER", ""),
        help="Payment line to dial (default: $PAYMENT_NUMBER)",
    )
    parser.add_argument("--limit", type=int, default=100, help="Maximum calls to fetch")
    args = parser.parse_args()

    account_sid = os.getenv("TWILIO_ACCOUNT_SID", "")
    auth_token = os.getenv("TWILIO_AUTH_TOKEN", "")
    if not account_sid or not auth_token:
        print("TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN must be set.", file=sys.stderr)
        return 1
    if not args.number:
        print("No payment number given (set PAYMENT_NUMBER or pass --number).", file=sys.stderr)
        return 1

    client = Client(account_sid, auth_token)
    try:
        forward_calls(client, args.number, limit=args.limit)
    except TwilioRestException as e:
        print(f"Failed to forward calls: {e.msg}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
