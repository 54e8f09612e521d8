"""Echo provider: answers with the most recent user message."""

MODELS = [
    {"id": "echo-plain", "name": "Echo"},
    {"id": "echo-upper", "name": "Echo (upper case)"},
]


async def prompt(settings, history, model):
    user_messages = [m["content"] for m in history if m["role"] == "user"]
    if not user_messages:
        raise ValueError("Conversation has no user message")

    reply = user_messages[-1]
    if model == "echo-upper":
        reply = reply.upper()
    prefix = settings.get("prefix") or ""
    return f"{prefix}{reply}"


async def listModels(settings):
    return MODELS


def getDefaultModuleID():
    return "echo-plain"
