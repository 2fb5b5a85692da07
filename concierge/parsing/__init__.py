from concierge.parsing.intent_parser import IntentParseResult, ParsedIntent, coerce_intent, parse_intent

__all__ = [
    "IntentParseResult",
    "ParsedIntent",
    "coerce_intent",
    "parse_intent",
]
