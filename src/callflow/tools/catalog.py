"""
Static tool catalog offered to the model.

Each descriptor pairs a pydantic parameter model (the JSON schema sent to the
model is derived from it) with the sentence spoken while the tool runs.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Literal, Type

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ToolModel(BaseModel):
    """Base for tool argument/result models: snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    say: str
    description: str
    parameters: Type[BaseModel]
    returns: Type[BaseModel]

    def to_openai_tool(self) -> dict[str, Any]:
        """Chat completions `tools` entry."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters.model_json_schema(by_alias=True),
            },
        }


# transferCall

class TransferCallArgs(ToolModel):
    pass


class TransferCallResult(ToolModel):
    status: str = Field(description="Whether or not the customer call was successfully transferred")


# updateInsuranceQuote

class UpdateInsuranceQuoteArgs(ToolModel):
    dental_coverage_type: Literal["basic", "comprehensive"] = Field(
        description="The type of dental coverage to add to the insurance quote.",
    )


class UpdateInsuranceQuoteResult(ToolModel):
    updated_monthly_premium: float = Field(
        description="The updated monthly premium including the selected dental coverage.",
    )


# findDentalCoverageOptions

class CurrentCoverage(ToolModel):
    dental_coverage: Literal["Yes", "No"] = Field(
        description="Whether the customer already has dental coverage.",
    )


class FindDentalCoverageOptionsArgs(ToolModel):
    current_coverage_options: CurrentCoverage


class DentalOption(ToolModel):
    option_name: str
    benefits: str
    price_increase: int


class FindDentalCoverageOptionsResult(ToolModel):
    dental_options: List[DentalOption]


CATALOG: tuple[ToolDescriptor, ...] = (
    ToolDescriptor(
        name="transferCall",
        say="One moment while I transfer your call.",
        description="Transfers the customer to a live agent in case they request help from a real person.",
        parameters=TransferCallArgs,
        returns=TransferCallResult,
    ),
    ToolDescriptor(
        name="updateInsuranceQuote",
        say="Let me update your insurance quote based on your selected dental coverage.",
        description=(
            "Updates the customer's insurance quote by adding either basic or comprehensive "
            "dental coverage and calculating the updated monthly premium."
        ),
        parameters=UpdateInsuranceQuoteArgs,
        returns=UpdateInsuranceQuoteResult,
    ),
    ToolDescriptor(
        name="findDentalCoverageOptions",
        say="Let me look up the dental coverage options available to you.",
        description=(
            "Lists the dental coverage options the customer can add, based on whether "
            "they already have dental coverage."
        ),
        parameters=FindDentalCoverageOptionsArgs,
        returns=FindDentalCoverageOptionsResult,
    ),
)
