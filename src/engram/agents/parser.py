"""Parse model responses into observations and summaries.

Responses are loosely structured XML: any number of ``<observation>``
blocks, an optional ``<summary>`` block and an optional
``<skip_summary reason="..."/>`` marker, frequently wrapped in code fences
or surrounded by prose. Blocks that fail to parse are dropped.
"""

from __future__ import annotations

import re
from xml.etree import ElementTree

import structlog

from engram.models.message import ParsedObservation, ParsedOutput, ParsedSummary

_logger = structlog.get_logger("engram.agents.parser")

_FENCE = re.compile(r"```(?:xml)?", re.IGNORECASE)
_OBSERVATION = re.compile(r"<observation>.*?</observation>", re.DOTALL)
_SUMMARY = re.compile(r"<summary>.*?</summary>", re.DOTALL)
_SKIP_SUMMARY = re.compile(r"<skip_summary(?:\s+reason=\"(?P<reason>[^\"]*)\")?\s*/>", re.IGNORECASE)


def _text(element: ElementTree.Element, tag: str) -> str:
    node = element.find(tag)
    if node is None:
        return ""
    return "".join(node.itertext()).strip()


def _items(element: ElementTree.Element, container: str, item: str) -> list[str]:
    parent = element.find(container)
    if parent is None:
        return []
    values = ("".join(child.itertext()).strip() for child in parent.findall(item))
    return [v for v in values if v]


def _load(block: str) -> ElementTree.Element | None:
    try:
        return ElementTree.fromstring(block)
    except ElementTree.ParseError as exc:
        _logger.debug("malformed_block_skipped", error=str(exc), block=block[:200])
        return None


def parse_observation(block: str) -> ParsedObservation | None:
    root = _load(block)
    if root is None:
        return None
    return ParsedObservation(
        type=_text(root, "type"),
        title=_text(root, "title"),
        subtitle=_text(root, "subtitle") or None,
        narrative=_text(root, "narrative"),
        facts=_items(root, "facts", "fact"),
        concepts=_items(root, "concepts", "concept"),
        files_read=_items(root, "files_read", "file"),
        files_modified=_items(root, "files_modified", "file"),
    )


def parse_summary(block: str) -> ParsedSummary | None:
    root = _load(block)
    if root is None:
        return None
    return ParsedSummary(
        request=_text(root, "request"),
        investigated=_text(root, "investigated"),
        learned=_text(root, "learned"),
        completed=_text(root, "completed"),
        next_steps=_text(root, "next_steps"),
        notes=_text(root, "notes"),
        files_read=_items(root, "files_read", "file"),
        files_modified=_items(root, "files_modified", "file"),
    )


def parse_response(text: str) -> ParsedOutput:
    """
    Extract every well-formed observation and the last well-formed summary.

    Observations with neither a title nor a narrative are discarded.
    """
    cleaned = _FENCE.sub("", text or "").strip()
    observations = []
    for block in _OBSERVATION.findall(cleaned):
        obs = parse_observation(block)
        if obs is not None and (obs.title or obs.narrative):
            observations.append(obs)

    summary = None
    for block in reversed(_SUMMARY.findall(cleaned)):
        summary = parse_summary(block)
        if summary is not None:
            break

    skip = _SKIP_SUMMARY.search(cleaned)
    return ParsedOutput(
        observations=observations,
        summary=summary,
        skip_summary_reason=(skip.group("reason") or "") if skip else None,
    )
