"""TEXT_TRANSFORM plugin - caesar, reverse, sha256 and case conversion."""

import hashlib
from typing import Any, Dict

from core.logging import get_logger
from services.engine.models import StepContext

logger = get_logger(__name__)

DEFAULT_CAESAR_SHIFT = 3


def caesar_cipher(text: str, shift: int) -> str:
    """Shift A-Z and a-z with wrap-around; everything else is left alone."""
    shift = int(shift) % 26
    out = []
    for char in text:
        if "A" <= char <= "Z":
            out.append(chr((ord(char) - 65 + shift) % 26 + 65))
        elif "a" <= char <= "z":
            out.append(chr((ord(char) - 97 + shift) % 26 + 97))
        else:
            out.append(char)
    return "".join(out)


def _transform(operation: str, text: str, config: Dict[str, Any]) -> str:
    if operation == "caesar":
        return caesar_cipher(text, config.get("shift", DEFAULT_CAESAR_SHIFT))
    if operation == "reverse":
        return text[::-1]
    if operation == "sha256":
        return hashlib.sha256(text.encode("utf-8")).hexdigest()
    if operation == "uppercase":
        return text.upper()
    if operation == "lowercase":
        return text.lower()
    raise ValueError(f"Unknown TEXT_TRANSFORM operation: {operation}")


async def handle_text_transform(context: StepContext) -> Dict[str, Any]:
    """Apply one text operation to input.text (or config.text).

    Returns:
        {"success": True, "output": {"text", "originalText", "operation"}}
        or {"success": False, "error": ...}
    """
    config = context.config
    operation = config.get("operation", "caesar")
    text = context.input.get("text") or config.get("text") or ""
    if not isinstance(text, str):
        text = str(text)

    try:
        result = _transform(operation, text, config)
    except (ValueError, TypeError) as e:
        logger.warning("Text transform failed", node_id=context.node_id, operation=operation, error=str(e))
        return {"success": False, "error": str(e)}

    return {
        "success": True,
        "output": {
            "text": result,
            "originalText": text,
            "operation": operation,
        },
    }
