"""
Report renderer used after a review completes (the QR generator lives in app.pcms.qr).

Both are black boxes to the workflow: the QR generator hands out an access code and URL,
the renderer turns a case snapshot into a stored artifact and returns its storage key.
Either may fail; the orchestrator turns that into a warning.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from app.pcms.qr import QrCode
from app.pcms.storage import Storage, storage_from_config


class ReportRenderer:
    def render(self, snapshot: dict[str, Any], qr: QrCode) -> str:
        raise NotImplementedError


def _line(label: str, value: Any) -> str:
    return f"{label}: {value if value not in (None, '') else '-'}"


def render_case_report_text(snapshot: dict[str, Any], qr: QrCode) -> str:
    lines = [
        "CASE REPORT",
        "=" * 60,
        _line("Title", snapshot.get("title")),
        _line("Case Number", snapshot.get("case_number")),
        _line("Status", (snapshot.get("status") or "").upper()),
        _line("Created", snapshot.get("created_at")),
        "",
    ]

    soap = snapshot.get("soap_note") or {}
    if soap:
        lines.append("SOAP NOTE")
        lines.append("-" * 60)
        for key in ("subjective", "objective", "assessment", "plan"):
            lines.append(_line(key.capitalize(), soap.get(key)))
        lines.append("")

    evaluation = snapshot.get("evaluation")
    if evaluation:
        lines.append("EVALUATION")
        lines.append("-" * 60)
        lines.append(_line("Score", f"{evaluation['score']:g}/{evaluation['max_score']:g}"))
        lines.append(_line("Evaluated", evaluation.get("evaluated_at")))
        lines.append(_line("Feedback", evaluation.get("feedback")))
        for item in evaluation.get("rubric_items") or []:
            lines.append(
                f"  - {item.get('criterion', '?')}: {item.get('score', '-')}/{item.get('max_score', '-')}"
                + (f" ({item['comments']})" if item.get("comments") else "")
            )
        lines.append("")

    lines.append(_line("Verify at", qr.url))
    lines.append(_line("Access code", qr.code))
    return "\n".join(lines) + "\n"


@dataclass(frozen=True)
class StorageReportRenderer(ReportRenderer):
    storage: Storage

    def render(self, snapshot: dict[str, Any], qr: QrCode) -> str:
        key = f"reports/case-report-{snapshot['case_number']}.txt"
        body = render_case_report_text(snapshot, qr).encode("utf-8")
        self.storage.put_bytes(key, body, content_type="text/plain; charset=utf-8")
        return key


def renderer_from_config(config: dict) -> ReportRenderer:
    return StorageReportRenderer(storage=storage_from_config(config))


