"""AI gateway client and the stage invokers built on it."""

from .client import (
    AIGatewayClient,
    AIGatewayError,
    AIGatewayResponseError,
    AIGatewayTimeoutError,
    AIGatewayUnavailableError,
    ChatResult,
)
from .invokers import CategorizationInvoker, ExtractionInvoker, normalize_date, parse_amount
from .prompts import PROMPT_VERSION, CategorizationPrompt, ExtractionPrompt, parse_json_response

__all__ = [
    "AIGatewayClient",
    "AIGatewayError",
    "AIGatewayResponseError",
    "AIGatewayTimeoutError",
    "AIGatewayUnavailableError",
    "CategorizationInvoker",
    "CategorizationPrompt",
    "ChatResult",
    "ExtractionInvoker",
    "ExtractionPrompt",
    "PROMPT_VERSION",
    "normalize_date",
    "parse_amount",
    "parse_json_response",
]
