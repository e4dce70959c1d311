from typing import Any, Dict, Optional

from pydantic import ValidationError as SchemaError

from database import now
from errors import ValidationError
from schemas import AuditEntry


def audit_entry(action: str, by: Optional[str], note: str = "", meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Build an audit trail entry ready to be $push-ed onto a document."""
    try:
        entry = AuditEntry(action=action, by=by, note=note or "", at=now(), meta=meta or {})
    except SchemaError as e:
        raise ValidationError(f"Invalid audit metadata: {e.errors()[0]['msg']}")
    return entry.model_dump()
