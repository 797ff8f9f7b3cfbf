from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from xml.etree import ElementTree

from .observation_types import coerce_observation_type
from .store.types import ObservationInput, SummaryInput

logger = logging.getLogger(__name__)

OBSERVATION_BLOCK_RE = re.compile(r"<observation>.*?</observation>", re.DOTALL)
SUMMARY_BLOCK_RE = re.compile(r"<summary>.*?</summary>", re.DOTALL)
SKIP_SUMMARY_RE = re.compile(
    r"<skip_summary(?:\s+reason=\"(?P<reason>[^\"]+)\")?\s*/>",
    re.IGNORECASE,
)
CODE_FENCE_RE = re.compile(r"```(?:xml)?", re.IGNORECASE)


@dataclass
class DistilledOutput:
    observations: list[ObservationInput]
    summary: SummaryInput | None
    skip_summary_reason: str | None


def _clean_xml_text(text: str) -> str:
    return CODE_FENCE_RE.sub("", text or "").strip()


def _text(node: ElementTree.Element | None) -> str | None:
    if node is None or node.text is None:
        return None
    return node.text.strip() or None


def _child_texts(parent: ElementTree.Element | None, tag: str) -> list[str]:
    if parent is None:
        return []
    return [value for child in parent.findall(tag) if (value := _text(child))]


def _parse_observation_block(block: str) -> ObservationInput | None:
    try:
        root = ElementTree.fromstring(block)
    except ElementTree.ParseError:
        logger.warning("skipping malformed observation block")
        return None
    return ObservationInput(
        type=coerce_observation_type(_text(root.find("type"))),
        title=_text(root.find("title")),
        subtitle=_text(root.find("subtitle")),
        facts=_child_texts(root.find("facts"), "fact"),
        narrative=_text(root.find("narrative")),
        concepts=_child_texts(root.find("concepts"), "concept"),
        files_read=_child_texts(root.find("files_read"), "file"),
        files_modified=_child_texts(root.find("files_modified"), "file"),
    )


def _parse_summary_block(block: str) -> SummaryInput | None:
    try:
        root = ElementTree.fromstring(block)
    except ElementTree.ParseError:
        logger.warning("skipping malformed summary block")
        return None
    return SummaryInput(
        request=_text(root.find("request")),
        investigated=_text(root.find("investigated")),
        learned=_text(root.find("learned")),
        completed=_text(root.find("completed")),
        next_steps=_text(root.find("next_steps")),
        notes=_text(root.find("notes")),
    )


def parse_observations(text: str) -> list[ObservationInput]:
    observations = []
    for block in OBSERVATION_BLOCK_RE.findall(_clean_xml_text(text)):
        parsed = _parse_observation_block(block.strip())
        if parsed:
            observations.append(parsed)
    return observations


def parse_summary(text: str) -> SummaryInput | None:
    """Return the first ``<summary>`` block, or None when absent or skipped."""

    cleaned = _clean_xml_text(text)
    skip_match = SKIP_SUMMARY_RE.search(cleaned)
    if skip_match:
        logger.info("summary skipped: %s", skip_match.group("reason") or "no reason")
        return None
    match = SUMMARY_BLOCK_RE.search(cleaned)
    if not match:
        return None
    return _parse_summary_block(match.group(0))


def parse_distilled_output(text: str) -> DistilledOutput:
    skip_match = SKIP_SUMMARY_RE.search(_clean_xml_text(text))
    return DistilledOutput(
        observations=parse_observations(text),
        summary=parse_summary(text),
        skip_summary_reason=skip_match.group("reason") if skip_match else None,
    )
