import re

from jsonschema import Draft7Validator, FormatChecker

PERCENT = {"type": "number", "minimum": 0, "maximum": 100}

POSITIVE = {"type": "number", "minimum": 0}

RULE_SCHEMA = {
    "type": "object",
    "description": "Shaping parameters, absent ones are left unconstrained",
    "properties": {
        "rate": {**POSITIVE, "description": "Bandwidth [kbit/s]"},
        "delay": {**POSITIVE, "description": "One way delay [ms]"},
        "delayJitter": {**POSITIVE, "description": "Delay jitter [ms]"},
        "delayJitterCorrelation": {
            **PERCENT,
            "description": "Delay jitter correlation",
        },
        "delayDistribution": {
            "type": "string",
            "enum": ["uniform", "normal", "pareto", "paretonormal"],
        },
        "reorder": {**PERCENT, "description": "Reordered packets [%]"},
        "reorderCorrelation": {**PERCENT, "description": "Reorder correlation"},
        "reorderGap": {"type": "integer", "minimum": 0},
        "loss": {**PERCENT, "description": "Lost packets [%]"},
        "lossBurst": {**POSITIVE, "description": "Loss burst length"},
        "queue": {"type": "integer", "minimum": 0, "description": "[packets]"},
        "at": {**POSITIVE, "description": "Activation offset [s]"},
    },
    "additionalProperties": False,
}

RULES_SCHEMA = {
    "oneOf": [
        {"$ref": "#/definitions/rule"},
        {"type": "array", "items": {"$ref": "#/definitions/rule"}},
    ]
}

CLASS_SCHEMA = {
    "type": "object",
    "properties": {
        "device": {"type": "string", "format": "device"},
        # malformed sessions are reported at lookup time only
        "sessions": {"type": ["string", "integer"]},
        "protocol": {"type": "string", "enum": ["udp", "tcp"]},
        "skipSourcePorts": {"type": "string", "format": "ports"},
        "skipDestinationPorts": {"type": "string", "format": "ports"},
        "filter": {"type": "string"},
        "match": {"type": "string"},
        "capture": {"type": "string"},
        "up": {"$ref": "#/definitions/rules"},
        "down": {"$ref": "#/definitions/rules"},
    },
    "additionalProperties": False,
}

SCHEMA = {
    "description": "Traffic classes, the position in the list is the class index",
    "type": "array",
    "items": {"$ref": "#/definitions/class"},
    "definitions": {
        "class": CLASS_SCHEMA,
        "rules": RULES_SCHEMA,
        "rule": RULE_SCHEMA,
    },
}

ThrottleFormatChecker = FormatChecker()


@ThrottleFormatChecker.checks("device")
def is_valid_device(instance):
    """A network interface name (see dev_valid_name in the kernel)."""
    if not isinstance(instance, str):
        return False
    if not 0 < len(instance) < 16:
        return False
    return "/" not in instance and not any(c.isspace() for c in instance)


@ThrottleFormatChecker.checks("ports")
def is_valid_ports(instance):
    """Comma separated ports or port ranges (e.g 80,443,5000:5100)."""
    if not isinstance(instance, str):
        return False
    return re.fullmatch(r"\d+(:\d+)?(,\d+(:\d+)?)*", instance) is not None


# classes are validated one by one
ClassValidator = Draft7Validator(
    {**CLASS_SCHEMA, "definitions": SCHEMA["definitions"]},
    format_checker=ThrottleFormatChecker,
)
