# Overview: Service-layer operations for document numbering; encapsulates business logic and database work.

from __future__ import annotations

from sqlalchemy import update

from ..errors import ValidationError
from ..extensions import db
from ..models import DocumentSequence
from stockledger.time_utils import business_day


def next_document_number(
    *,
    tenant_id: int,
    document_type: str,
    prefix: str,
    period: str | None = None,
    pad: int = 4,
) -> str:
    """
    Atomically allocate the next document number for a tenant/type/day.

    Runs inside the caller's atomic unit and never commits. The counter row
    is bumped with a single UPDATE, so two concurrent allocations serialize
    on that row. When the row does not exist yet it is inserted; a lost
    insert race surfaces as IntegrityError and the caller's unit retries.

    Returns e.g. "ORD-20261018-0001".
    """
    if not tenant_id:
        raise ValidationError("tenant_id is required")
    if not document_type:
        raise ValidationError("document_type is required")

    period = period or business_day()

    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.tenant_id == tenant_id,
            DocumentSequence.document_type == document_type,
            DocumentSequence.period == period,
        )
        .values(next_number=DocumentSequence.next_number + 1)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        current = (
            db.session.query(DocumentSequence.next_number)
            .filter_by(tenant_id=tenant_id, document_type=document_type, period=period)
            .scalar()
        )
        next_num = current - 1
    else:
        seq = DocumentSequence(
            tenant_id=tenant_id,
            document_type=document_type,
            period=period,
            next_number=2,
        )
        db.session.add(seq)
        db.session.flush()
        next_num = 1

    return f"{prefix}-{period}-{next_num:0{pad}d}"
