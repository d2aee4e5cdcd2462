"""Post-hoc citation checks. Diagnostic only: findings are logged, the response is never touched."""

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Tuple

from .markers import strip_markers

logger = logging.getLogger("uvicorn.error")

# [label] with no "(" right after it; ignores markdown images and task-list boxes.
_BROKEN_RE = re.compile(r"(?<!!)\[([^\[\]\n]{1,40})\](?!\()")
_CITATION_RE = re.compile(r"\[(\d+)\]\((https?://[^)\s]+)\)")
_TASK_BOX_RE = re.compile(r"^\s*[xX ]?\s*$")


@dataclass
class AuditReport:
    broken: List[str] = field(default_factory=list)
    out_of_sequence: List[int] = field(default_factory=list)
    unknown_urls: List[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not (self.broken or self.out_of_sequence or self.unknown_urls)


def find_broken_citations(text: str) -> List[str]:
    return [m.group(0) for m in _BROKEN_RE.finditer(text) if not _TASK_BOX_RE.match(m.group(1))]


def citations(text: str) -> List[Tuple[int, str]]:
    return [(int(m.group(1)), m.group(2)) for m in _CITATION_RE.finditer(text)]


def audit(text: str, known_urls: Iterable[str]) -> AuditReport:
    prose = strip_markers(text)
    report = AuditReport(broken=find_broken_citations(prose))

    # First use of each number must be the next integer; reuse of an earlier number is fine.
    seen: List[int] = []
    for number, _url in citations(prose):
        if number in seen:
            continue
        if number != len(seen) + 1:
            report.out_of_sequence.append(number)
        seen.append(number)

    known = set(known_urls)
    if known:
        for _number, url in citations(prose):
            if url not in known and url not in report.unknown_urls:
                report.unknown_urls.append(url)
    return report


def audit_and_log(request_id: str, text: str, known_urls: Iterable[str]) -> AuditReport:
    report = audit(text, known_urls)
    for snippet in report.broken:
        logger.warning("Broken citation in %s: %s", request_id, snippet)
    if report.out_of_sequence:
        logger.info("Citation numbering not sequential in %s: %s", request_id, report.out_of_sequence)
    if report.unknown_urls:
        logger.info("Citations outside the search results in %s: %s", request_id, report.unknown_urls)
    return report
