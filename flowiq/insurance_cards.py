"""Insurance card capture, extraction and verification."""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.orm import Session

from flowiq import hipaa
from flowiq.config import get_settings
from flowiq.errors import ConflictError, NotFoundError, ValidationError
from flowiq.models import InsuranceCard
from flowiq.patients import get_patient
from flowiq.sanitizer import sanitize_optional
from flowiq.storage import LocalStorage, get_storage
from flowiq.time_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

BUCKET = "insurance-cards"
CARD_TYPES = {"medical", "dental", "vision", "pharmacy"}
SIDES = {"front", "back"}

_IMAGE_SIGNATURES = {
    "image/jpeg": (".jpg", lambda data: data[:3] == b"\xff\xd8\xff"),
    "image/png": (".png", lambda data: data[:8] == b"\x89PNG\r\n\x1a\n"),
    "image/webp": (".webp", lambda data: data[:4] == b"RIFF" and data[8:12] == b"WEBP"),
}

KNOWN_PAYERS = (
    "Blue Cross Blue Shield",
    "UnitedHealthcare",
    "Aetna",
    "Cigna",
    "Humana",
    "Anthem",
    "Kaiser Permanente",
    "Medicare",
    "Medicaid",
    "Delta Dental",
    "MetLife",
    "Guardian",
    "Tricare",
)

_PATTERNS = {
    "memberId": re.compile(
        r"(?:member|subscriber|identification)\s*(?:id|#|no\.?|number)\s*[:#]?\s*([A-Z0-9][A-Z0-9-]{4,19})",
        re.IGNORECASE,
    ),
    "groupNumber": re.compile(r"\bgroup\s*(?:number|no\.?|#)?\s*[:#]?\s*([A-Z0-9][A-Z0-9-]{2,14})", re.IGNORECASE),
    "policyNumber": re.compile(r"\bpolicy\s*(?:number|no\.?|#)?\s*[:#]?\s*([A-Z0-9][A-Z0-9-]{3,19})", re.IGNORECASE),
    "memberName": re.compile(r"(?i:(?:(?:member|subscriber)\s+)?name)\s*:\s*([A-Z][A-Za-z'\-]+(?:[ \t]+[A-Z][A-Za-z'\-]+)+)"),
    "planType": re.compile(r"\b(PPO|HMO|EPO|POS|HDHP|Medicare Advantage)\b", re.IGNORECASE),
    "copayPCP": re.compile(r"\b(?:PCP|primary care)\s*(?:copay)?\s*[:]?\s*\$\s*(\d+(?:\.\d{2})?)", re.IGNORECASE),
    "copaySpecialist": re.compile(r"\b(?:specialist|SPC)\s*(?:copay)?\s*[:]?\s*\$\s*(\d+(?:\.\d{2})?)", re.IGNORECASE),
    "rxBin": re.compile(r"\bRX\s*BIN\s*[:#]?\s*(\d{6})\b", re.IGNORECASE),
}
_PAYER_LABEL_RE = re.compile(r"(?:insurance|payer|carrier)\s*:\s*([^\n]+)", re.IGNORECASE)
_KEY_FIELDS = ("insuranceProvider", "memberId", "groupNumber")


def parse_card_text(text: str) -> Dict[str, Any]:
    """Pull card fields out of OCR text; absent fields are omitted."""

    extracted: Dict[str, Any] = {}
    label = _PAYER_LABEL_RE.search(text or "")
    if label:
        extracted["insuranceProvider"] = label.group(1).strip()
    else:
        lowered = (text or "").lower()
        for payer in KNOWN_PAYERS:
            if payer.lower() in lowered:
                extracted["insuranceProvider"] = payer
                break
    for key, pattern in _PATTERNS.items():
        match = pattern.search(text or "")
        if not match:
            continue
        value = match.group(1).strip()
        if key in {"memberId", "groupNumber", "policyNumber", "planType"}:
            value = value.upper()
        extracted[key] = value
    return extracted


def extraction_confidence(extracted: Dict[str, Any]) -> float:
    found = sum(1 for key in _KEY_FIELDS if extracted.get(key))
    return round(found / len(_KEY_FIELDS), 2)


def _detect_extension(content_type: str, data: bytes) -> str:
    spec = _IMAGE_SIGNATURES.get((content_type or "").lower())
    if spec is None:
        raise ValidationError(f"Unsupported image type: {content_type}")
    extension, matches = spec
    if not matches(data):
        raise ValidationError("File contents do not match the declared image type")
    return extension


def get_card(session: Session, tenant_id: str, card_id: str) -> InsuranceCard:
    card = session.get(InsuranceCard, card_id)
    if card is None or card.tenant_id != tenant_id:
        raise NotFoundError(f"Insurance card {card_id} not found")
    return card


def list_cards(session: Session, tenant_id: str, patient_id: str) -> List[InsuranceCard]:
    patient = get_patient(session, tenant_id, patient_id)
    return list(
        session.scalars(
            sa.select(InsuranceCard)
            .where(InsuranceCard.tenant_id == tenant_id, InsuranceCard.patient_id == patient.id)
            .order_by(InsuranceCard.is_primary.desc(), InsuranceCard.created_at.desc())
        )
    )


def _demote_other_primaries(session: Session, card: InsuranceCard) -> None:
    for other in session.scalars(
        sa.select(InsuranceCard).where(
            InsuranceCard.patient_id == card.patient_id,
            InsuranceCard.card_type == card.card_type,
            InsuranceCard.id != card.id,
            InsuranceCard.is_primary.is_(True),
        )
    ):
        other.is_primary = False


def upload_card_image(
    session: Session,
    tenant_id: str,
    patient_id: str,
    side: str,
    filename: Optional[str],
    content_type: str,
    data: bytes,
    *,
    card_id: Optional[str] = None,
    card_type: str = "medical",
    is_primary: bool = True,
    storage: Optional[LocalStorage] = None,
) -> InsuranceCard:
    """Store one side of a card image, encrypted, and return the card row."""

    if side not in SIDES:
        raise ValidationError("side must be 'front' or 'back'")
    if card_type not in CARD_TYPES:
        raise ValidationError(f"Unsupported card type: {card_type}")
    if not data:
        raise ValidationError("Uploaded file is empty")
    limit = get_settings().max_upload_bytes
    if len(data) > limit:
        raise ValidationError(f"File exceeds the {limit} byte upload limit")
    extension = _detect_extension(content_type, data)

    patient = get_patient(session, tenant_id, patient_id)
    if card_id:
        card = get_card(session, tenant_id, card_id)
        if card.patient_id != patient.id:
            raise ValidationError("card belongs to a different patient")
        if card.verification_status == "verified":
            raise ConflictError("Verified cards cannot be changed")
    else:
        card = InsuranceCard(
            tenant_id=tenant_id,
            patient_id=patient.id,
            card_type=card_type,
            is_primary=is_primary,
            extracted_data={},
        )
        session.add(card)
        session.flush()
        if is_primary:
            _demote_other_primaries(session, card)

    storage = storage or get_storage()
    key = f"{tenant_id}/{patient.id}/{card.id}-{side}{extension}"
    storage.put(BUCKET, key, data, content_type, encrypt=True)
    if side == "front":
        card.front_image_path = key
    else:
        card.back_image_path = key
    card.verification_status = "pending"
    session.flush()
    logger.info("insurance_card_uploaded", extra={"card_id": card.id, "side": side, "original": filename})
    return card


def card_image(card: InsuranceCard, side: str, storage: Optional[LocalStorage] = None) -> tuple:
    """Return ``(bytes, content_type)`` for one side of *card*."""

    key = card.front_image_path if side == "front" else card.back_image_path
    if side not in SIDES or not key:
        raise NotFoundError(f"No {side} image for card {card.id}")
    storage = storage or get_storage()
    return storage.get(BUCKET, key), storage.content_type(BUCKET, key)


def extract_card_data(
    session: Session,
    tenant_id: str,
    card_id: str,
    ocr_text: Optional[str] = None,
    *,
    user_id: Optional[str] = None,
) -> InsuranceCard:
    card = get_card(session, tenant_id, card_id)
    if card.verification_status == "verified":
        raise ConflictError("Verified cards cannot be re-extracted")

    if ocr_text:
        extracted = parse_card_text(ocr_text)
        confidence = extraction_confidence(extracted)
        source = "ocr_text"
    else:
        routed = hipaa.route_ai_request(
            session,
            tenant_id,
            "insurance-card-extractor",
            {
                "cardId": card.id,
                "cardType": card.card_type,
                "frontImage": card.front_image_path,
                "backImage": card.back_image_path,
            },
            user_id,
            "insurance_card_extraction",
        )
        result = routed["data"]
        extracted = dict(result.get("extracted") or {})
        confidence = float(result.get("confidence") or extraction_confidence(extracted))
        source = "insurance-card-extractor"

    card.extracted_data = {**extracted, "confidence": confidence, "source": source}
    card.insurance_provider_name = sanitize_optional(extracted.get("insuranceProvider")) or card.insurance_provider_name
    card.member_id = extracted.get("memberId") or card.member_id
    card.group_number = extracted.get("groupNumber") or card.group_number
    card.policy_number = extracted.get("policyNumber") or card.policy_number
    card.verification_status = "extracted" if extracted else "pending"
    session.flush()
    return card


def verify_card(session: Session, tenant_id: str, card_id: str) -> InsuranceCard:
    card = get_card(session, tenant_id, card_id)
    if card.verification_status == "verified":
        return card
    if not card.member_id or not card.insurance_provider_name:
        raise ValidationError("Member ID and insurance provider are required before verification")
    card.verification_status = "verified"
    card.rejection_reason = None
    card.verified_at = utc_now()
    if card.is_primary and card.card_type == "medical":
        patient = get_patient(session, tenant_id, card.patient_id)
        patient.insurance_provider = card.insurance_provider_name
        patient.insurance_number = card.member_id
    session.flush()
    return card


def reject_card(session: Session, tenant_id: str, card_id: str, reason: str) -> InsuranceCard:
    card = get_card(session, tenant_id, card_id)
    reason = sanitize_optional(reason)
    if not reason:
        raise ValidationError("A rejection reason is required")
    if card.verification_status == "verified":
        raise ConflictError("Verified cards cannot be rejected")
    card.verification_status = "rejected"
    card.rejection_reason = reason
    session.flush()
    return card


def serialize_card(card: InsuranceCard) -> Dict[str, Any]:
    return {
        "id": card.id,
        "patientId": card.patient_id,
        "cardType": card.card_type,
        "hasFrontImage": bool(card.front_image_path),
        "hasBackImage": bool(card.back_image_path),
        "extractedData": dict(card.extracted_data or {}),
        "insuranceProviderName": card.insurance_provider_name,
        "memberId": card.member_id,
        "groupNumber": card.group_number,
        "policyNumber": card.policy_number,
        "verificationStatus": card.verification_status,
        "rejectionReason": card.rejection_reason,
        "verifiedAt": ensure_utc(card.verified_at).isoformat() if card.verified_at else None,
        "isPrimary": card.is_primary,
    }


__all__ = [
    "BUCKET",
    "card_image",
    "extract_card_data",
    "extraction_confidence",
    "get_card",
    "list_cards",
    "parse_card_text",
    "reject_card",
    "serialize_card",
    "upload_card_image",
    "verify_card",
]
