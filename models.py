# models.py
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


# ============================================================
# Errors
# ============================================================

class CSPReportError(Exception):
    """Base class for every error raised by the report pipeline."""


class MalformedReport(CSPReportError):
    pass


# ============================================================
# Violation Record
# ============================================================

# Reporting API (report-to) uses camelCase keys; map them to the
# report-uri names that the ledger persists.
REPORTING_API_KEYS = {
    "documentURL": "document-uri",
    "referrer": "referrer",
    "blockedURL": "blocked-uri",
    "effectiveDirective": "effective-directive",
    "originalPolicy": "original-policy",
    "statusCode": "status-code",
    "sourceFile": "source-file",
    "lineNumber": "line-number",
    "columnNumber": "column-number",
}


class ViolationRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    document_uri: str = Field("", alias="document-uri")
    referrer: str = ""
    blocked_uri: str = Field("", alias="blocked-uri")
    violated_directive: str = Field("", alias="violated-directive")
    effective_directive: str = Field("", alias="effective-directive")
    original_policy: str = Field("", alias="original-policy")
    status_code: int = Field(0, alias="status-code")
    source_file: str = Field("", alias="source-file")
    line_number: int = Field(0, alias="line-number")
    column_number: int = Field(0, alias="column-number")

    @field_validator(
        "document_uri",
        "referrer",
        "blocked_uri",
        "violated_directive",
        "effective_directive",
        "original_policy",
        "source_file",
        mode="before",
    )
    @classmethod
    def _none_as_empty(cls, v: Any) -> Any:
        # Browsers send null for fields they cannot fill in.
        return "" if v is None else v

    @field_validator("status_code", "line_number", "column_number", mode="before")
    @classmethod
    def _none_as_zero(cls, v: Any) -> Any:
        return 0 if v is None else v

    def to_json(self) -> dict[str, Any]:
        """Ledger form: browser key names, insertion order of fields is stable."""
        return self.model_dump(by_alias=True)


def _from_reporting_api(body: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for src, dst in REPORTING_API_KEYS.items():
        if src in body:
            out[dst] = body[src]
    # violated-directive is the historic name of effective-directive
    out.setdefault("violated-directive", body.get("effectiveDirective", ""))
    return out


def _report_bodies(payload: Any) -> list[dict[str, Any]]:
    # Reporting API: [{"type": "csp-violation", "body": {...}}, ...]
    if isinstance(payload, dict) and isinstance(payload.get("reports"), list):
        payload = payload["reports"]

    if isinstance(payload, list):
        bodies = []
        for entry in payload:
            if not isinstance(entry, dict):
                raise MalformedReport("reporting API entry must be an object")
            # report-to endpoints also receive deprecation/intervention reports
            if entry.get("type", "csp-violation") != "csp-violation":
                continue
            if not isinstance(entry.get("body"), dict):
                raise MalformedReport("reporting API entry without a body object")
            bodies.append(_from_reporting_api(entry["body"]))
        if not bodies:
            raise MalformedReport("no csp-violation entries in batch")
        return bodies

    if not isinstance(payload, dict):
        raise MalformedReport("report must be a JSON object")

    # report-uri: {"csp-report": {...}}; earlier senders post the record flat.
    if "csp-report" in payload:
        inner = payload["csp-report"]
        if not isinstance(inner, dict):
            raise MalformedReport("csp-report must be an object")
        return [inner]
    return [payload]


def parse_report_payload(payload: Any) -> list[ViolationRecord]:
    """
    Turn a decoded request body into violation records.

    Accepted shapes:
    - {"csp-report": {...}}                 (report-uri)
    - {...}                                 (flattened record)
    - [{"type": "csp-violation", ...}, ...] (report-to, also under "reports")
    """
    records = []
    for body in _report_bodies(payload):
        try:
            records.append(ViolationRecord.model_validate(body))
        except ValidationError as e:
            raise MalformedReport(f"invalid violation record: {e.error_count()} error(s)") from e
    return records
