"""
Report Synthesizer

Turns the extracted text of every processed item into one Markdown audit
report plus a 0-100 risk score, with a single language-model call.

Prompt layout (queue order):

    Analyze these N documents for forensic audit red flags:

    [Doc 1: <file name>] [<extraction method>] [<category>]
    <extracted text>
    ---
    [Doc 2: ...]
    ...
    <analysis checklist>
    FORMAT:
    FORENSIC_RISK_SCORE: [0-100]
    [Analysis]

Per-item text is already clipped by the dispatcher; the synthesizer also
splits SYNTHESIS_PROMPT_CHAR_BUDGET evenly across items so very large
datarooms still fit the model's context window.

Failure semantics:
  - provider errors / empty reply → exception, the batch runner fails the job
  - missing or out-of-range score → 50, the report is still stored
  - empty corpus → fixed "no documents" report, no model call
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol, Sequence

from auditvault.core.config import settings
from auditvault.llm.gateway import LLMGateway
from auditvault.llm.router import ModelRequirements
from auditvault.processing.dispatcher import clamp_text

logger = logging.getLogger(__name__)

NEUTRAL_RISK_SCORE = 50
MIN_ITEM_PROMPT_CHARS = 500

REPORT_TITLE = "## Forensic Audit Report"
EMPTY_CORPUS_REPORT = f"{REPORT_TITLE}\n\nNo documents found in this dataroom.\n"

SYSTEM_PROMPT = (
    "You are a forensic auditor reviewing the contents of a due-diligence dataroom. "
    "Base every finding on the supplied document excerpts and name the document it comes from. "
    "When an excerpt is a placeholder or an error marker, treat that document as unreviewed."
)

_ANALYSIS_CHECKLIST = """Provide forensic audit analysis:
1. Revenue reconciliation
2. Financial red flags
3. Document authenticity
4. Temporal issues
5. Critical gaps
6. Overall risk assessment

FORMAT:
FORENSIC_RISK_SCORE: [0-100]
[Analysis]"""

_SCORE_PATTERN  = re.compile(r"(?:FORENSIC|FRAUD)_RISK_SCORE\**\s*:\s*\**\s*(\d+)", re.IGNORECASE)
_LEGACY_LABEL   = re.compile(r"FRAUD_RISK_SCORE", re.IGNORECASE)
_RULE_LINE      = re.compile(r"^={5,}\s*$", re.MULTILINE)
_EMOJI          = re.compile("[\U0001F300-\U0001FAFF\u2600-\u27BF]")
_BOLD_CAPS_LINE = re.compile(r"^\*\*[ \t]*([A-Z0-9][A-Z0-9 \t:#\-]{6,}?)[ \t]*\*\*$", re.MULTILINE)


class SynthesisError(RuntimeError):
    """The model produced nothing usable."""


class SynthesisItem(Protocol):
    file_name:         str
    extraction_method: str | None
    document_category: str | None
    extracted_text:    str | None
    status:            str
    error:             str | None


@dataclass
class SynthesisResult:
    report_markdown: str
    risk_score:      int | None
    report_json:     dict = field(default_factory=dict)
    model_used:      str | None = None


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def parse_risk_score(analysis: str) -> int:
    """First labelled score in 0-100, otherwise the neutral default."""
    match = _SCORE_PATTERN.search(analysis or "")
    if not match:
        return NEUTRAL_RISK_SCORE
    score = int(match.group(1))
    return score if 0 <= score <= 100 else NEUTRAL_RISK_SCORE


def sanitize_analysis(text: str) -> str:
    text = _LEGACY_LABEL.sub("FORENSIC_RISK_SCORE", text or "")
    text = _RULE_LINE.sub("", text)
    text = _EMOJI.sub("", text)
    return _BOLD_CAPS_LINE.sub(r"\1", text)


def format_report(vault_label: str, analysis: str, risk_score: int, files_analyzed: int) -> str:
    return "\n".join([
        REPORT_TITLE,
        "",
        f"**Dataroom:** {vault_label}",
        f"**Files Analyzed:** {files_analyzed}",
        "",
        "### Forensic Risk Assessment",
        "",
        f"**Forensic Risk Score:** {risk_score}/100",
        "",
        "### Detailed Forensic Analysis",
        "",
        sanitize_analysis(analysis).strip() or "No forensic analysis returned.",
    ])


def _item_text(item: SynthesisItem) -> str:
    if item.extracted_text:
        return item.extracted_text
    return f"[Processing failed: {item.error or 'unknown error'}]"


def build_prompt(items: Sequence[SynthesisItem], char_budget: int) -> str:
    per_item = max(MIN_ITEM_PROMPT_CHARS, char_budget // max(len(items), 1))
    sections = [
        f"[Doc {i}: {item.file_name}] [{item.extraction_method or 'Failed'}] "
        f"[{item.document_category or 'unknown'}]\n"
        f"{clamp_text(_item_text(item), per_item)}"
        for i, item in enumerate(items, start=1)
    ]
    return (
        f"Analyze these {len(items)} documents for forensic audit red flags:\n\n"
        + "\n---\n".join(sections)
        + "\n\n"
        + _ANALYSIS_CHECKLIST
    )


# ---------------------------------------------------------------------------
# ReportSynthesizer
# ---------------------------------------------------------------------------

class ReportSynthesizer:

    def __init__(
        self,
        gateway: LLMGateway | None = None,
        max_output_tokens: int | None = None,
        prompt_char_budget: int | None = None,
    ) -> None:
        self._gateway     = gateway or LLMGateway()
        self._max_tokens  = max_output_tokens or settings.synthesis_max_output_tokens
        self._char_budget = prompt_char_budget or settings.synthesis_prompt_char_budget

    async def synthesize(
        self,
        items: Sequence[SynthesisItem],
        vault_label: str | None = None,
    ) -> SynthesisResult:
        """
        One model call over all items, in the order given.

        Raises:
            SynthesisError: the model returned an empty reply.
            RuntimeError:   every provider failed (from the gateway).
        """
        label = vault_label or "Unnamed dataroom"

        if not items:
            logger.info("Synthesis | vault=%s files=0 → empty-corpus report", label)
            return SynthesisResult(
                report_markdown=EMPTY_CORPUS_REPORT,
                risk_score=None,
                report_json={
                    "executive_summary": "No documents found",
                    "files_analyzed":    0,
                    "risk_score":        None,
                    "coverage_notes":    ["No files to audit."],
                    "generated_at":      datetime.now(timezone.utc).isoformat(),
                },
            )

        prompt   = build_prompt(items, self._char_budget)
        messages = LLMGateway.build_messages(SYSTEM_PROMPT, prompt)
        response = await self._gateway.invoke(
            messages,
            requirements=ModelRequirements(min_output_tokens=self._max_tokens),
            max_output_tokens=self._max_tokens,
        )

        analysis = (response.content or "").strip()
        if not analysis:
            raise SynthesisError(f"Empty reply from {response.provider}/{response.model_used}")

        risk_score = parse_risk_score(analysis)
        report     = format_report(label, analysis, risk_score, len(items))

        logger.info(
            "Synthesis | vault=%s files=%d risk_score=%d model=%s report_chars=%d",
            label, len(items), risk_score, response.model_used, len(report),
        )

        return SynthesisResult(
            report_markdown=report,
            risk_score=risk_score,
            model_used=response.model_used,
            report_json={
                "risk_score":         risk_score,
                "files_analyzed":     len(items),
                "failed_items":       sum(1 for i in items if i.status == "failed"),
                "method_breakdown":   dict(Counter(i.extraction_method or "Failed" for i in items)),
                "category_breakdown": dict(Counter(i.document_category or "unknown" for i in items)),
                "model_used":         response.model_used,
                "provider":           response.provider,
                "generated_at":       datetime.now(timezone.utc).isoformat(),
            },
        )
