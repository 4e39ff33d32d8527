"""
Tests for the tool catalog, registry and handlers.
"""

import json
from unittest.mock import MagicMock, patch

import pytest

from src.callflow.config import get_config
from src.callflow.errors import ToolArgumentsError, ToolRegistryError, UnknownToolError
from src.callflow.tools import CATALOG, ToolContext, ToolRegistry, get_registry, parse_tool_arguments
from src.callflow.tools.catalog import (
    FindDentalCoverageOptionsArgs,
    TransferCallArgs,
    UpdateInsuranceQuoteArgs,
)
from src.callflow.tools.handlers import (
    HANDLERS,
    find_dental_coverage_options,
    transfer_call,
    update_insurance_quote,
)


@pytest.fixture
def context():
    return ToolContext(call_sid="CA123", config=get_config())


class TestParseToolArguments:

    def test_plain_object(self):
        assert parse_tool_arguments('{"dentalCoverageType": "basic"}') == {"dentalCoverageType": "basic"}

    def test_empty_arguments(self):
        assert parse_tool_arguments("") == {}
        assert parse_tool_arguments("   ") == {}

    def test_duplicated_object(self):
        assert parse_tool_arguments('{"a":1}{"a":1}') == {"a": 1}

    def test_truncated_object(self):
        with pytest.raises(ToolArgumentsError) as exc_info:
            parse_tool_arguments('{"a": ')
        assert exc_info.value.raw_arguments == '{"a": '

    def test_nested_duplicate_is_not_recovered(self):
        with pytest.raises(ToolArgumentsError):
            parse_tool_arguments('{"a":{"b":1}}{"a":{"b":1}}')

    def test_non_object(self):
        with pytest.raises(ToolArgumentsError):
            parse_tool_arguments('"basic"')


class TestRegistry:

    def test_shipped_catalog_is_complete(self):
        registry = get_registry()

        assert registry.names == ["transferCall", "updateInsuranceQuote", "findDentalCoverageOptions"]
        assert len(registry) == len(CATALOG)
        assert "transferCall" in registry

    def test_missing_handler_fails_build(self):
        handlers = dict(HANDLERS)
        del handlers["transferCall"]

        with pytest.raises(ToolRegistryError, match="transferCall"):
            ToolRegistry.from_catalog(CATALOG, handlers)

    def test_duplicate_names_fail_build(self):
        with pytest.raises(ToolRegistryError, match="Duplicate"):
            ToolRegistry.from_catalog([CATALOG[0], CATALOG[0]], HANDLERS)

    def test_unknown_tool(self):
        with pytest.raises(UnknownToolError) as exc_info:
            get_registry().get("orderPizza")
        assert exc_info.value.name == "orderPizza"

    def test_definitions_use_camel_case_schema(self):
        definitions = {d["function"]["name"]: d for d in get_registry().definitions()}

        quote = definitions["updateInsuranceQuote"]["function"]["parameters"]
        assert quote["required"] == ["dentalCoverageType"]
        assert quote["properties"]["dentalCoverageType"]["enum"] == ["basic", "comprehensive"]
        assert definitions["transferCall"]["type"] == "function"

    def test_validate_arguments_rejects_bad_enum(self):
        with pytest.raises(ToolArgumentsError):
            get_registry().validate_arguments("updateInsuranceQuote", {"dentalCoverageType": "gold"})

    @pytest.mark.asyncio
    async def test_invoke_returns_json_text(self, context):
        registry = get_registry()
        args = registry.validate_arguments("updateInsuranceQuote", {"dentalCoverageType": "comprehensive"})

        output = await registry.invoke("updateInsuranceQuote", args, context)

        assert json.loads(output) == {"updatedMonthlyPremium": 394.0}


class TestHandlers:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("coverage,premium", [("basic", 374), ("comprehensive", 394)])
    async def test_update_insurance_quote(self, context, coverage, premium):
        result = await update_insurance_quote(UpdateInsuranceQuoteArgs(dental_coverage_type=coverage), context)

        assert result.updated_monthly_premium == premium

    @pytest.mark.asyncio
    async def test_dental_options_for_new_customer(self, context):
        args = FindDentalCoverageOptionsArgs.model_validate({"currentCoverageOptions": {"dentalCoverage": "No"}})

        result = await find_dental_coverage_options(args, context)

        assert [o.option_name for o in result.dental_options] == [
            "Basic Dental Coverage",
            "Comprehensive Dental Coverage",
            "Enhanced Dental & Vision Coverage",
        ]

    @pytest.mark.asyncio
    async def test_dental_options_for_existing_coverage_are_upgrades(self, context):
        args = FindDentalCoverageOptionsArgs.model_validate({"currentCoverageOptions": {"dentalCoverage": "Yes"}})

        result = await find_dental_coverage_options(args, context)

        assert "Basic Dental Coverage" not in [o.option_name for o in result.dental_options]
        assert len(result.dental_options) == 2

    @pytest.mark.asyncio
    async def test_transfer_call_updates_twilio_call(self, context):
        client = MagicMock()
        with patch("src.callflow.tools.handlers.TwilioClient", return_value=client) as client_cls:
            result = await transfer_call(TransferCallArgs(), context)

        assert result.status == "transferred"
        client_cls.assert_called_once_with("ACtest123456789", "test_auth_token")
        client.calls.assert_called_once_with("CA123")
        twiml = client.calls.return_value.update.call_args.kwargs["twiml"]
        assert "<Dial>+15550001111</Dial>" in twiml

    @pytest.mark.asyncio
    async def test_transfer_call_without_call_sid(self):
        context = ToolContext(call_sid="", config=get_config())

        with patch("src.callflow.tools.handlers.TwilioClient") as client_cls:
            result = await transfer_call(TransferCallArgs(), context)

        assert result.status == "failed"
        client_cls.assert_not_called()

    @pytest.mark.asyncio
    async def test_transfer_call_twilio_error(self, context):
        client = MagicMock()
        client.calls.return_value.update.side_effect = RuntimeError("twilio down")
        with patch("src.callflow.tools.handlers.TwilioClient", return_value=client):
            result = await transfer_call(TransferCallArgs(), context)

        assert result.status == "failed"
