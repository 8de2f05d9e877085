"""Request helpers shared by the module blueprints."""

from __future__ import annotations

from typing import Any

from flask import current_app, request

from app.compliance.constants import DEFAULT_REVIEW_WINDOW_DAYS, REVIEW_WINDOWS_DAYS
from app.compliance.errors import ValidationError
from app.compliance.extraction import TextExtractor
from app.compliance.notifications import Notifier
from app.compliance.storage import Storage, storage_from_config


def json_payload() -> dict[str, Any]:
    """JSON body, or form fields for multipart uploads."""
    if request.is_json:
        data = request.get_json(silent=True)
        if data is None:
            raise ValidationError("Request body is not valid JSON.")
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object.")
        return data
    out: dict[str, Any] = {}
    for k in request.form.keys():
        values = request.form.getlist(k)
        out[k] = values if len(values) > 1 else values[0]
    return out


def query_int(name: str, default: int | None = None) -> int | None:
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValidationError(f"{name} must be an integer.", field=name) from e


def query_bool(name: str, payload: dict[str, Any] | None = None) -> bool:
    v = (payload or {}).get(name, request.args.get(name))
    if isinstance(v, bool):
        return v
    return str(v or "").strip().lower() in ("1", "true", "yes", "on")


def days_ahead_arg() -> int:
    days = query_int("days_ahead", DEFAULT_REVIEW_WINDOW_DAYS)
    if days not in REVIEW_WINDOWS_DAYS:
        allowed = ", ".join(str(x) for x in REVIEW_WINDOWS_DAYS)
        raise ValidationError(f"days_ahead must be one of {allowed}.", field="days_ahead")
    return days  # type: ignore[return-value]


def storage() -> Storage:
    return storage_from_config(current_app.config)


def text_extractor() -> TextExtractor:
    return current_app.extensions["text_extractor"]


def notifier() -> Notifier:
    return current_app.extensions["notifier"]
