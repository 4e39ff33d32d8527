"""
Tool bodies for the insurance agent.

Handlers receive validated argument models and a ToolContext, and return the
descriptor's result model.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog
from twilio.rest import Client as TwilioClient

from src.callflow.tools.catalog import (
    DentalOption,
    FindDentalCoverageOptionsArgs,
    FindDentalCoverageOptionsResult,
    TransferCallArgs,
    TransferCallResult,
    UpdateInsuranceQuoteArgs,
    UpdateInsuranceQuoteResult,
)

if TYPE_CHECKING:
    from src.callflow.tools.registry import ToolContext

logger = structlog.get_logger(__name__)

BASE_MONTHLY_PREMIUM = 354
DENTAL_PREMIUMS = {"basic": 20, "comprehensive": 40}

DENTAL_OPTIONS = (
    DentalOption(
        option_name="Basic Dental Coverage",
        benefits="Covers preventive care, basic procedures such as fillings and simple extractions.",
        price_increase=20,
    ),
    DentalOption(
        option_name="Comprehensive Dental Coverage",
        benefits="Includes basic coverage plus major procedures like crowns, bridges, and orthodontics.",
        price_increase=40,
    ),
    DentalOption(
        option_name="Enhanced Dental & Vision Coverage",
        benefits=(
            "Covers comprehensive dental care and adds vision benefits including exams, "
            "glasses, and contact lenses."
        ),
        price_increase=55,
    ),
)


async def transfer_call(args: TransferCallArgs, context: "ToolContext") -> TransferCallResult:
    config = context.config
    if not context.call_sid or not config.transfer_number:
        logger.warning(
            "Cannot transfer call",
            call_sid=context.call_sid,
            transfer_number_set=bool(config.transfer_number),
        )
        return TransferCallResult(status="failed")

    client = TwilioClient(config.twilio_account_sid, config.twilio_auth_token)
    twiml = f"<Response><Dial>{config.transfer_number}</Dial></Response>"

    try:
        await asyncio.to_thread(lambda: client.calls(context.call_sid).update(twiml=twiml))
    except Exception as e:
        logger.error("Call transfer failed", call_sid=context.call_sid, error=str(e))
        return TransferCallResult(status="failed")

    logger.info("Call transferred", call_sid=context.call_sid)
    return TransferCallResult(status="transferred")


async def update_insurance_quote(
    args: UpdateInsuranceQuoteArgs, context: "ToolContext"
) -> UpdateInsuranceQuoteResult:
    premium = BASE_MONTHLY_PREMIUM + DENTAL_PREMIUMS[args.dental_coverage_type]
    logger.info(
        "Insurance quote updated",
        call_sid=context.call_sid,
        dental_coverage_type=args.dental_coverage_type,
        updated_monthly_premium=premium,
    )
    return UpdateInsuranceQuoteResult(updated_monthly_premium=premium)


async def find_dental_coverage_options(
    args: FindDentalCoverageOptionsArgs, context: "ToolContext"
) -> FindDentalCoverageOptionsResult:
    options = list(DENTAL_OPTIONS)
    # Callers who already have dental coverage are only offered upgrades.
    if args.current_coverage_options.dental_coverage == "Yes":
        options = [o for o in options if o.option_name != "Basic Dental Coverage"]
    return FindDentalCoverageOptionsResult(dental_options=options)


HANDLERS = {
    "transferCall": transfer_call,
    "updateInsuranceQuote": update_insurance_quote,
    "findDentalCoverageOptions": find_dental_coverage_options,
}
