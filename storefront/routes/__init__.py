from typing import Any

from ..database import serialize_document


def ok(data: Any = None, **extra: Any) -> dict[str, Any]:
    """Success envelope shared by every route."""
    return {"success": True, "data": serialize_document(data), **extra}
