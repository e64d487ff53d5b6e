"""Markdown session reports rendered to HTML for the operator dashboard.

Architecture note:
    Reports are assembled as Markdown first so the same text can be saved,
    pasted into a ticket or rendered. HTML rendering goes through MarkdownIt
    with raw HTML disabled, which keeps model-produced question text and
    rationales from injecting markup into the dashboard.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from html import escape

from markdown_it import MarkdownIt

from exam_pilot.core.services.record_store import QuestionRecord, SessionRecord


@dataclass(slots=True)
class SessionReportRenderer:
    """Builds a Markdown summary of a stored session and renders it to HTML."""

    enable_html: bool = False
    _markdown: MarkdownIt = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._markdown = MarkdownIt("commonmark", {"html": self.enable_html}).enable("table")

    def build_markdown(self, session: SessionRecord, questions: list[QuestionRecord]) -> str:
        lines = [f"# Session {session.session_id}", ""]
        lines.append(f"- Exam type: {session.exam_type}")
        lines.append(f"- Started: {session.started_at.isoformat() if session.started_at else 'n/a'}")
        lines.append(f"- Ended: {session.ended_at.isoformat() if session.ended_at else 'running'}")
        lines.append(f"- Questions handled: {len(questions)}")

        statuses = Counter(record.status for record in questions)
        if statuses:
            summary = ", ".join(f"{status}: {count}" for status, count in sorted(statuses.items()))
            lines.append(f"- Outcomes: {summary}")
        sources = Counter(record.source for record in questions if record.source)
        if sources:
            summary = ", ".join(f"{source}: {count}" for source, count in sorted(sources.items()))
            lines.append(f"- Answer sources: {summary}")
        confidences = [record.confidence for record in questions if record.confidence is not None]
        if confidences:
            lines.append(f"- Average confidence: {sum(confidences) / len(confidences):.2f}")

        if not questions:
            lines.extend(["", "_No questions were handled in this session._"])
            return "\n".join(lines) + "\n"

        lines.extend(["", "| # | Question | Answer | Source | Confidence | Status | Note |", "|---|---|---|---|---|---|---|"])
        for record in questions:
            confidence = f"{record.confidence:.2f}" if record.confidence is not None else "-"
            lines.append(
                "| {seq} | {text} | {answer} | {source} | {confidence} | {status} | {note} |".format(
                    seq=record.sequence,
                    text=_cell(record.text),
                    answer=_cell(record.answer or "-"),
                    source=record.source or "-",
                    confidence=confidence,
                    status=record.status,
                    note=_cell(record.outcome_reason or ""),
                )
            )
        return "\n".join(lines) + "\n"

    def render_html(self, session: SessionRecord, questions: list[QuestionRecord]) -> str:
        fragment = self._markdown.render(self.build_markdown(session, questions))
        return f"""<!doctype html>
<html lang=\"en\">
  <head>
    <meta charset=\"utf-8\" />
    <title>{escape(f"Exam Pilot report {session.session_id}")}</title>
    <style>
      body {{ font-family: 'Segoe UI', system-ui, sans-serif; margin: 0; padding: 1.5rem; background: #0b1120; color: #f5f7ff; }}
      table {{ border-collapse: collapse; width: 100%; }}
      th, td {{ border: 1px solid #1f2a44; padding: 0.4rem 0.6rem; text-align: left; vertical-align: top; }}
    </style>
  </head>
  <body>
{fragment}
  </body>
</html>"""


def _cell(text: str) -> str:
    return " ".join(text.split()).replace("|", "\\|")
