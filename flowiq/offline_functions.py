"""Deterministic stand-ins for the hosted remote functions.

Used when ``FLOWIQ_OFFLINE_MODE`` is enabled or no functions URL is
configured.  Every handler is a pure function of its input so tests and local
development get stable results.  Placeholder tokens in the input are echoed
into the output untouched, which lets callers exercise token restoration.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Callable, Dict, List

from flowiq.errors import RemoteFunctionError

logger = logging.getLogger(__name__)

# keyword -> (code, type, description)
CODE_HINTS: Dict[str, tuple] = {
    "hypertension": ("I10", "ICD-10", "Essential (primary) hypertension"),
    "diabetes": ("E11.9", "ICD-10", "Type 2 diabetes mellitus without complications"),
    "low back pain": ("M54.50", "ICD-10", "Low back pain, unspecified"),
    "neck pain": ("M54.2", "ICD-10", "Cervicalgia"),
    "sleep apnea": ("G47.33", "ICD-10", "Obstructive sleep apnea"),
    "headache": ("R51.9", "ICD-10", "Headache, unspecified"),
    "caries": ("K02.9", "ICD-10", "Dental caries, unspecified"),
    "office visit": ("99213", "CPT", "Established patient office visit, low complexity"),
    "new patient": ("99203", "CPT", "New patient office visit, low complexity"),
    "spinal manipulation": ("98941", "CPT", "Chiropractic manipulative treatment, 3-4 regions"),
    "cleaning": ("D1110", "CDT", "Prophylaxis, adult"),
    "oral appliance": ("E0486", "HCPCS", "Oral device to reduce airway collapsibility"),
}


def _note_generator(body: Dict[str, Any]) -> Dict[str, Any]:
    patient = body.get("patient") or {}
    complaint = body.get("chiefComplaint") or body.get("chief_complaint") or "Routine visit"
    transcript = (body.get("transcript") or "").strip()
    vitals = body.get("vitals") or {}
    findings = body.get("findings") or []

    name = " ".join(str(patient.get(key, "")) for key in ("first_name", "last_name")).strip() or "Patient"
    age = patient.get("age")
    subject = f"{name}, {age} y/o," if age is not None else f"{name}"
    subjective = f"{subject} presents with {complaint}."
    if transcript:
        subjective += f" Reports: {transcript}"
    vitals_text = ", ".join(f"{k}: {v}" for k, v in sorted(vitals.items())) or "Vitals not recorded"
    objective = vitals_text
    if findings:
        objective += ". Findings: " + "; ".join(str(item) for item in findings)
    return {
        "subjective": subjective,
        "objective": objective,
        "assessment": f"Assessment consistent with {complaint}.",
        "plan": "Continue current management and follow up as scheduled.",
        "model": "offline",
    }


def _coding_assistant(body: Dict[str, Any]) -> Dict[str, Any]:
    text = (body.get("text") or "").lower()
    codes: List[Dict[str, Any]] = []
    for keyword, (code, code_type, description) in CODE_HINTS.items():
        if keyword in text:
            codes.append(
                {
                    "code": code,
                    "type": code_type,
                    "description": description,
                    "confidence": 0.85,
                    "rationale": f"Mentions '{keyword}'",
                }
            )
    return {"codes": codes, "model": "offline"}


def _schedule_optimizer(body: Dict[str, Any]) -> Dict[str, Any]:
    appointments = list(body.get("appointments") or [])
    ranked = sorted(
        enumerate(appointments),
        key=lambda item: (-float(item[1].get("riskScore") or 0), item[0]),
    )
    optimized = []
    for index, (_original, appt) in enumerate(ranked):
        entry = dict(appt)
        entry["buffer_minutes"] = 5
        entry["priority_score"] = max(100 - index * 10, 0)
        optimized.append(entry)
    recommendations = []
    if any((appt.get("riskLevel") in {"high", "critical"}) for appt in appointments):
        recommendations.append("Schedule high-risk patients earlier in the day")
    if len(appointments) > 8:
        recommendations.append("Consider adding buffer time between consecutive visits")
    return {"optimizedSchedule": optimized, "recommendations": recommendations, "model": "offline"}


def _clinical_summarizer(body: Dict[str, Any]) -> Dict[str, Any]:
    patient = body.get("patient") or {}
    appointments = body.get("appointments") or []
    notes = body.get("notes") or []
    name = " ".join(str(patient.get(key, "")) for key in ("first_name", "last_name")).strip() or "Patient"
    history = patient.get("medical_history") or "no recorded history"
    key_points = [f"History: {history}", f"{len(appointments)} appointment(s) on record"]
    medications = patient.get("medications")
    if medications:
        key_points.append(f"Medications: {medications}")
    if notes:
        latest = notes[-1]
        if latest.get("assessment"):
            key_points.append(f"Latest assessment: {latest['assessment']}")
    return {
        "summary": f"Clinical summary for {name}: " + "; ".join(key_points) + ".",
        "keyPoints": key_points,
        "model": "offline",
    }


def _insurance_card_extractor(body: Dict[str, Any]) -> Dict[str, Any]:
    from flowiq.insurance_cards import parse_card_text

    text = body.get("ocrText") or ""
    extracted = parse_card_text(text) if text else {}
    return {"extracted": extracted, "confidence": 0.8 if extracted else 0.0, "model": "offline"}


def _send_communication(body: Dict[str, Any]) -> Dict[str, Any]:
    fingerprint = json.dumps(
        [body.get("channel"), body.get("to"), body.get("body")], sort_keys=True, default=str
    )
    return {
        "id": "offline-" + hashlib.sha1(fingerprint.encode("utf-8")).hexdigest()[:12],
        "status": "sent",
    }


HANDLERS: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    "note-generator": _note_generator,
    "coding-assistant": _coding_assistant,
    "schedule-optimizer": _schedule_optimizer,
    "clinical-summarizer": _clinical_summarizer,
    "insurance-card-extractor": _insurance_card_extractor,
    "send-communication": _send_communication,
}


def invoke(name: str, body: Dict[str, Any]) -> Dict[str, Any]:
    handler = HANDLERS.get(name)
    if handler is None:
        raise RemoteFunctionError(name, 404, "no offline handler")
    logger.debug("offline_function_invoked", extra={"function": name})
    return handler(body)


__all__ = ["CODE_HINTS", "HANDLERS", "invoke"]
