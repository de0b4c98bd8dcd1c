"""ERA (X12 835) parsing and payment posting.

Remittance files are parsed into :class:`PaymentRecord` objects, one per
``CLP`` claim payment loop.  Each record is matched to a claim and scored;
records that clear :data:`AUTO_POST_THRESHOLD` are posted straight to the
claim, the rest wait in ``pending_review`` until reconciled or posted by hand.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any, Dict, List, Optional, Tuple

import sqlalchemy as sa
from sqlalchemy.orm import Session

from flowiq import claims as claims_service
from flowiq.errors import ConflictError, EraParseError, InvalidTransitionError, NotFoundError, ValidationError
from flowiq.metrics import PAYMENTS_POSTED
from flowiq.models import Claim, Payment
from flowiq.time_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

AUTO_POST_THRESHOLD = 0.9
AMOUNT_TOLERANCE = 0.01
PAYABLE_STATUSES = {"submitted", "accepted", "appealed", "partially_paid", "denied"}
# CLP02 value for a claim the payer denied outright
DENIED_CLAIM_STATUS = "4"
DENIAL_ERROR = "Payer denied claim"

_DEFAULT_ELEMENT_SEP = "*"
_DEFAULT_SEGMENT_SEP = "~"

_PR_TYPES = {"1": "deductible", "2": "coinsurance", "3": "copay"}
_GROUP_TYPES = {"CO": "contractual", "OA": "other", "PI": "payer_initiated", "CR": "correction"}


def adjustment_type(group: str, reason: str) -> str:
    group = (group or "").upper()
    if group == "PR":
        return _PR_TYPES.get(reason, "patient_responsibility")
    return _GROUP_TYPES.get(group, "other")


@dataclass
class PaymentRecord:
    claim_reference: str
    claim_status_code: str
    charge_amount: float
    paid_amount: float
    patient_responsibility: float = 0.0
    payer_claim_number: Optional[str] = None
    payer_name: Optional[str] = None
    payment_date: Optional[date] = None
    service_date: Optional[date] = None
    check_number: Optional[str] = None
    era_number: Optional[str] = None
    adjustments: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def adjustment_total(self) -> float:
        return round(sum(adj["amount"] for adj in self.adjustments), 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "claimReference": self.claim_reference,
            "claimStatusCode": self.claim_status_code,
            "chargeAmount": self.charge_amount,
            "paidAmount": self.paid_amount,
            "patientResponsibility": self.patient_responsibility,
            "payerClaimNumber": self.payer_claim_number,
            "payerName": self.payer_name,
            "paymentDate": self.payment_date.isoformat() if self.payment_date else None,
            "serviceDate": self.service_date.isoformat() if self.service_date else None,
            "checkNumber": self.check_number,
            "eraNumber": self.era_number,
            "adjustments": list(self.adjustments),
        }


def _separators(text: str) -> Tuple[str, str]:
    if text.startswith("ISA") and len(text) > 105:
        return text[3], text[105]
    return _DEFAULT_ELEMENT_SEP, _DEFAULT_SEGMENT_SEP


def _amount(value: str, segment: str) -> float:
    try:
        return round(float(value), 2) if value not in (None, "") else 0.0
    except ValueError as exc:
        raise EraParseError(f"Invalid amount {value!r} in {segment} segment") from exc


def _ccyymmdd(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return datetime.strptime(value.strip(), "%Y%m%d").date()
    except ValueError:
        return None


def _element(elements: List[str], index: int) -> str:
    return elements[index].strip() if len(elements) > index else ""


def parse_era(text: str) -> List[PaymentRecord]:
    """Parse an 835 remittance into one :class:`PaymentRecord` per claim."""

    text = (text or "").lstrip()
    if not text:
        raise EraParseError("ERA file is empty")
    element_sep, segment_sep = _separators(text)

    payer_name: Optional[str] = None
    payment_date: Optional[date] = None
    check_number: Optional[str] = None
    era_number: Optional[str] = None
    records: List[PaymentRecord] = []
    current: Optional[PaymentRecord] = None

    for raw in text.split(segment_sep):
        segment = raw.strip()
        if not segment:
            continue
        elements = segment.split(element_sep)
        tag = elements[0].upper()

        if tag == "ISA":
            era_number = _element(elements, 13) or era_number
        elif tag == "BPR":
            payment_date = _ccyymmdd(_element(elements, 16)) or payment_date
        elif tag == "TRN":
            check_number = _element(elements, 2) or check_number
        elif tag == "N1" and _element(elements, 1).upper() == "PR":
            payer_name = _element(elements, 2) or payer_name
        elif tag == "CLP":
            current = PaymentRecord(
                claim_reference=_element(elements, 1),
                claim_status_code=_element(elements, 2),
                charge_amount=_amount(_element(elements, 3), "CLP"),
                paid_amount=_amount(_element(elements, 4), "CLP"),
                patient_responsibility=_amount(_element(elements, 5), "CLP"),
                payer_claim_number=_element(elements, 7) or None,
            )
            if not current.claim_reference:
                raise EraParseError("CLP segment is missing the claim reference")
            records.append(current)
        elif tag == "CAS" and current is not None:
            group = _element(elements, 1).upper()
            for index in range(2, len(elements), 3):
                reason = _element(elements, index)
                if not reason:
                    continue
                current.adjustments.append(
                    {
                        "group": group,
                        "reasonCode": reason,
                        "amount": _amount(_element(elements, index + 1), "CAS"),
                        "type": adjustment_type(group, reason),
                    }
                )
        elif tag == "DTM":
            qualifier = _element(elements, 1)
            value = _ccyymmdd(_element(elements, 2))
            if qualifier == "405":
                payment_date = payment_date or value
            elif qualifier == "232" and current is not None:
                current.service_date = value

    if not records:
        raise EraParseError("No claim payment (CLP) segments found")

    for record in records:
        record.payer_name = payer_name
        record.payment_date = payment_date
        record.check_number = check_number
        record.era_number = era_number
    return records


# ---------------------------------------------------------------------------
# Posting
# ---------------------------------------------------------------------------


def _payer_matches(expected: Optional[str], actual: Optional[str]) -> bool:
    if not expected or not actual:
        return False
    a, b = expected.strip().lower(), actual.strip().lower()
    return a == b or a in b or b in a


def score_payment(claim: Optional[Claim], payer_name: Optional[str], paid: float, adjustments: float) -> Tuple[float, List[str]]:
    """Return the auto-post confidence and the reconciliation errors."""

    if claim is None:
        return 0.0, ["Claim not found"]
    confidence = 0.6
    errors: List[str] = []
    if _payer_matches(claim.payer_name, payer_name):
        confidence += 0.2
    else:
        errors.append("Payer mismatch")
    if abs(round(paid + adjustments, 2) - round(claim.total_amount or 0, 2)) <= AMOUNT_TOLERANCE:
        confidence += 0.2
    else:
        errors.append("Amount discrepancy detected")
    return round(confidence, 2), errors


def _find_duplicate(session: Session, tenant_id: str, claim_reference: str, check_number: Optional[str], era_number: Optional[str], amount: float) -> Optional[Payment]:
    stmt = sa.select(Payment).where(
        Payment.tenant_id == tenant_id,
        Payment.claim_reference == claim_reference,
        Payment.payment_amount == amount,
    )
    if check_number:
        stmt = stmt.where(Payment.check_number == check_number)
    elif era_number:
        stmt = stmt.where(Payment.era_number == era_number)
    else:
        return None
    return session.scalar(stmt.limit(1))


def _apply_to_claim(session: Session, payment: Payment, claim: Claim, *, actor_id: Optional[str], mode: str) -> None:
    if claim.status not in PAYABLE_STATUSES:
        raise ConflictError(f"Claim in status {claim.status} cannot accept payments")
    claim.paid_amount = round((claim.paid_amount or 0) + payment.payment_amount, 2)
    contractual = sum(
        adj.get("amount", 0) for adj in payment.adjustments or [] if adj.get("group") == "CO"
    )
    outstanding = round((claim.total_amount or 0) - claim.paid_amount - contractual, 2)
    target = "paid" if outstanding <= AMOUNT_TOLERANCE else "partially_paid"
    if claim.status == "denied":
        claims_service.transition_claim(session, claim.tenant_id, claim.id, "appealed", "Payment received", actor_id=actor_id)
    if claim.status != target:
        claims_service.transition_claim(
            session,
            claim.tenant_id,
            claim.id,
            target,
            f"{mode} payment {payment.payment_amount:.2f}",
            actor_id=actor_id,
        )
    payment.claim_id = claim.id
    payment.status = "posted"
    payment.auto_posted = mode == "auto"
    payment.posted_at = utc_now()
    PAYMENTS_POSTED.labels(mode=mode).inc()


def _record_denial(session: Session, claim: Claim, record: PaymentRecord, *, actor_id: Optional[str]) -> None:
    if "denied" not in claims_service.CLAIM_TRANSITIONS.get(claim.status, set()):
        return
    reasons = ", ".join(f"{adj['group']}-{adj['reasonCode']}" for adj in record.adjustments) or None
    claims_service.transition_claim(
        session,
        claim.tenant_id,
        claim.id,
        "denied",
        "Denied on remittance",
        actor_id=actor_id,
        denial_reason=reasons,
    )


def auto_post_payment(
    session: Session,
    tenant_id: str,
    record: PaymentRecord,
    *,
    actor_id: Optional[str] = None,
) -> Payment:
    """Store *record* as a payment and post it when confidence allows.

    Raises :class:`ConflictError` when the same payment was already recorded.
    """

    duplicate = _find_duplicate(
        session, tenant_id, record.claim_reference, record.check_number, record.era_number, record.paid_amount
    )
    if duplicate is not None:
        raise ConflictError(
            f"Duplicate payment for claim {record.claim_reference}",
            details={"paymentId": duplicate.id},
        )

    claim = claims_service.find_claim_by_number(session, tenant_id, record.claim_reference)
    confidence, errors = score_payment(claim, record.payer_name, record.paid_amount, record.adjustment_total)
    payment = Payment(
        tenant_id=tenant_id,
        claim_id=claim.id if claim else None,
        claim_reference=record.claim_reference,
        payer_name=record.payer_name,
        payment_date=record.payment_date,
        payment_amount=record.paid_amount,
        check_number=record.check_number,
        era_number=record.era_number,
        adjustments=list(record.adjustments),
        status="pending_review",
        confidence=confidence,
        reconciliation_errors=errors,
    )
    session.add(payment)
    session.flush()

    if record.claim_status_code == DENIED_CLAIM_STATUS or record.paid_amount <= 0:
        payment.reconciliation_errors = errors + [DENIAL_ERROR]
        if claim is not None:
            _record_denial(session, claim, record, actor_id=actor_id)
    elif claim is not None and confidence >= AUTO_POST_THRESHOLD:
        if claim.status in PAYABLE_STATUSES:
            try:
                with session.begin_nested():
                    _apply_to_claim(session, payment, claim, actor_id=actor_id, mode="auto")
            except InvalidTransitionError as exc:
                logger.warning("payment_post_failed", extra={"payment_id": payment.id, "error": exc.message})
                payment.reconciliation_errors = errors + [exc.message]
        else:
            payment.reconciliation_errors = errors + [f"Claim status {claim.status} cannot accept payment"]
    if payment.status != "posted":
        PAYMENTS_POSTED.labels(mode="pending_review").inc()
    session.flush()
    logger.info(
        "payment_recorded",
        extra={"payment_id": payment.id, "status": payment.status, "confidence": confidence},
    )
    return payment


def process_era_file(
    session: Session,
    tenant_id: str,
    text: str,
    *,
    actor_id: Optional[str] = None,
) -> Dict[str, Any]:
    records = parse_era(text)
    results = []
    posted = pending = duplicates = 0
    for record in records:
        entry = record.to_dict()
        try:
            payment = auto_post_payment(session, tenant_id, record, actor_id=actor_id)
        except ConflictError as exc:
            duplicates += 1
            entry.update({"status": "duplicate", "paymentId": (exc.details or {}).get("paymentId"), "confidence": 0.0, "errors": [exc.message]})
            results.append(entry)
            continue
        if payment.status == "posted":
            posted += 1
        else:
            pending += 1
        entry.update(
            {
                "status": payment.status,
                "paymentId": payment.id,
                "confidence": payment.confidence,
                "autoPosted": payment.auto_posted,
                "errors": list(payment.reconciliation_errors or []),
            }
        )
        results.append(entry)
    return {
        "records": results,
        "total": len(records),
        "posted": posted,
        "pendingReview": pending,
        "duplicates": duplicates,
        "totalPaid": round(sum(r.paid_amount for r in records), 2),
    }


def get_payment(session: Session, tenant_id: str, payment_id: str) -> Payment:
    payment = session.get(Payment, payment_id)
    if payment is None or payment.tenant_id != tenant_id:
        raise NotFoundError(f"Payment {payment_id} not found")
    return payment


def list_payments(
    session: Session,
    tenant_id: str,
    *,
    status: Optional[str] = None,
    claim_id: Optional[str] = None,
    limit: int = 200,
) -> List[Payment]:
    stmt = sa.select(Payment).where(Payment.tenant_id == tenant_id)
    if status:
        stmt = stmt.where(Payment.status == status)
    if claim_id:
        stmt = stmt.where(Payment.claim_id == claim_id)
    return list(session.scalars(stmt.order_by(Payment.created_at.desc()).limit(limit)))


def post_payment_manually(
    session: Session,
    tenant_id: str,
    payment_id: str,
    *,
    claim_id: Optional[str] = None,
    actor_id: Optional[str] = None,
) -> Payment:
    payment = get_payment(session, tenant_id, payment_id)
    if payment.status == "posted":
        raise ConflictError("Payment has already been posted")
    target_claim_id = claim_id or payment.claim_id
    if not target_claim_id:
        raise ValidationError("A claim is required to post this payment")
    claim = claims_service.get_claim(session, tenant_id, target_claim_id)
    _apply_to_claim(session, payment, claim, actor_id=actor_id, mode="manual")
    payment.reconciliation_errors = []
    session.flush()
    return payment


def _range(start: date, end: date) -> Tuple[datetime, datetime]:
    return (
        datetime.combine(start, time.min, tzinfo=timezone.utc),
        datetime.combine(end, time.max, tzinfo=timezone.utc),
    )


def reconcile_payments(session: Session, tenant_id: str, start: date, end: date) -> Dict[str, Any]:
    """Re-score pending payments; post those that now clear the threshold."""

    since, until = _range(start, end)
    pending = session.scalars(
        sa.select(Payment).where(
            Payment.tenant_id == tenant_id,
            Payment.status == "pending_review",
            Payment.created_at >= since,
            Payment.created_at <= until,
        )
    )
    reconciled = 0
    discrepancies = []
    for payment in pending:
        claim = session.get(Claim, payment.claim_id) if payment.claim_id else None
        if claim is None:
            claim = claims_service.find_claim_by_number(session, tenant_id, payment.claim_reference or "")
        adjustments = round(sum(adj.get("amount", 0) for adj in payment.adjustments or []), 2)
        denied = DENIAL_ERROR in (payment.reconciliation_errors or []) or payment.payment_amount <= 0
        confidence, errors = score_payment(claim, payment.payer_name, payment.payment_amount, adjustments)
        if denied:
            errors.append(DENIAL_ERROR)
        payment.confidence = confidence
        payment.reconciliation_errors = errors
        if not denied and claim is not None and confidence >= AUTO_POST_THRESHOLD and claim.status in PAYABLE_STATUSES:
            try:
                with session.begin_nested():
                    _apply_to_claim(session, payment, claim, actor_id=None, mode="auto")
            except InvalidTransitionError as exc:
                payment.reconciliation_errors = errors + [exc.message]
            else:
                reconciled += 1
                continue
        if claim is not None:
            payment.claim_id = claim.id
        expected = round(claim.total_amount or 0, 2) if claim else 0.0
        discrepancies.append(
            {
                "paymentId": payment.id,
                "claimReference": payment.claim_reference,
                "description": "; ".join(errors) or f"Claim status {claim.status} cannot accept payment",
                "expectedAmount": expected,
                "actualAmount": round(payment.payment_amount + adjustments, 2),
                "confidence": confidence,
                "suggestedAction": "Locate the claim and post manually" if claim is None else "Review and post manually",
            }
        )
    session.flush()
    return {"reconciled": reconciled, "discrepancies": discrepancies}


def payment_analytics(session: Session, tenant_id: str, start: date, end: date) -> Dict[str, Any]:
    since, until = _range(start, end)
    payments = list(
        session.scalars(
            sa.select(Payment).where(
                Payment.tenant_id == tenant_id,
                Payment.created_at >= since,
                Payment.created_at <= until,
            )
        )
    )
    total = len(payments)
    auto_posted = [p for p in payments if p.auto_posted]
    posting_hours = [
        (ensure_utc(p.posted_at) - ensure_utc(p.created_at)).total_seconds() / 3600
        for p in payments
        if p.posted_at is not None and p.created_at is not None
    ]
    payers: Dict[str, Dict[str, Any]] = {}
    for payment in payments:
        name = payment.payer_name or "Unknown"
        bucket = payers.setdefault(name, {"name": name, "amount": 0.0, "count": 0})
        bucket["amount"] = round(bucket["amount"] + payment.payment_amount, 2)
        bucket["count"] += 1
    return {
        "totalPayments": total,
        "totalAmount": round(sum(p.payment_amount for p in payments), 2),
        "autoPostedCount": len(auto_posted),
        "autoPostingRate": round(len(auto_posted) / total * 100, 1) if total else 0.0,
        "averagePostingTime": round(sum(posting_hours) / len(posting_hours), 2) if posting_hours else 0.0,
        "topPayers": sorted(payers.values(), key=lambda item: -item["amount"])[:5],
    }


def serialize_payment(payment: Payment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "claimId": payment.claim_id,
        "claimReference": payment.claim_reference,
        "payerName": payment.payer_name,
        "paymentDate": payment.payment_date.isoformat() if payment.payment_date else None,
        "paymentAmount": payment.payment_amount,
        "checkNumber": payment.check_number,
        "eraNumber": payment.era_number,
        "adjustments": list(payment.adjustments or []),
        "status": payment.status,
        "autoPosted": payment.auto_posted,
        "confidence": payment.confidence,
        "reconciliationErrors": list(payment.reconciliation_errors or []),
        "postedAt": ensure_utc(payment.posted_at).isoformat() if payment.posted_at else None,
    }


__all__ = [
    "AUTO_POST_THRESHOLD",
    "PaymentRecord",
    "adjustment_type",
    "auto_post_payment",
    "get_payment",
    "list_payments",
    "parse_era",
    "payment_analytics",
    "post_payment_manually",
    "process_era_file",
    "reconcile_payments",
    "score_payment",
    "serialize_payment",
]
