from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..repository import EntityType, list_entities, parse_entity_type
from .link_graph import create_link

logger = logging.getLogger(__name__)

BRACKET_RE = re.compile(r"\[\[([^\[\]]+)\]\]")
MAX_REF_LENGTH = 160


@dataclass(frozen=True)
class MentionCandidate:
    entity_type: str
    entity_id: str
    name: str
    synonyms: Tuple[str, ...] = ()

    def terms(self) -> List[str]:
        seen = set()
        out = []
        for term in (self.name, *self.synonyms):
            clean = (term or "").strip()
            if not clean or clean.lower() in seen:
                continue
            seen.add(clean.lower())
            out.append(clean)
        return out

    def projection(self) -> Dict[str, str]:
        return {"entity_type": self.entity_type, "entity_id": self.entity_id, "title": self.name}


@dataclass(frozen=True)
class Mention:
    start: int
    end: int
    text: str
    entity: MentionCandidate

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start": self.start,
            "end": self.end,
            "text": self.text,
            "entity": self.entity.projection(),
        }


@dataclass
class Segment:
    kind: str
    text: str
    entity: Optional[Dict[str, Any]] = None
    action: Any = field(default=None, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"kind": self.kind, "text": self.text}
        if self.entity is not None:
            out["entity"] = self.entity
        return out


def _term_pattern(term: str) -> re.Pattern:
    return re.compile(r"(?<!\w)" + re.escape(term) + r"(?!\w)", re.IGNORECASE)


def find_mentions(text: str, candidates: Iterable[MentionCandidate]) -> List[Mention]:
    """Whole-word, case-insensitive occurrences of each candidate's name or synonyms.

    Matches of different candidates are never merged, so two entities sharing
    a span both show up. Callers sort by ``start``.
    """
    if not text:
        return []
    mentions: List[Mention] = []
    for candidate in candidates:
        spans = set()
        for term in candidate.terms():
            for match in _term_pattern(term).finditer(text):
                spans.add((match.start(), match.end()))
        for start, end in sorted(spans):
            mentions.append(Mention(start=start, end=end, text=text[start:end], entity=candidate))
    return mentions


def render_with_mentions(
    text: str,
    matches: Sequence[Mention],
    on_click: Optional[Callable[[MentionCandidate], Any]] = None,
) -> List[Segment]:
    """Split ``text`` into literal and mention segments.

    A match that starts inside an already rendered one is skipped; for equal
    starts the longer match renders.
    """
    ordered = sorted(matches, key=lambda m: (m.start, -(m.end - m.start)))
    segments: List[Segment] = []
    cursor = 0
    for match in ordered:
        if match.start < cursor:
            continue
        if match.start > cursor:
            segments.append(Segment(kind="text", text=text[cursor:match.start]))
        segments.append(
            Segment(
                kind="mention",
                text=text[match.start:match.end],
                entity=match.entity.projection(),
                action=on_click(match.entity) if on_click else None,
            )
        )
        cursor = match.end
    if cursor < len(text):
        segments.append(Segment(kind="text", text=text[cursor:]))
    return segments


def extract_bracket_refs(text: str) -> List[str]:
    if not text:
        return []
    refs: List[str] = []
    for raw in BRACKET_RE.findall(text):
        token = raw.strip()[:MAX_REF_LENGTH]
        if token and token not in refs:
            refs.append(token)
    return refs


def resolve_bracket_refs(text: str, notes: Iterable[Mapping[str, Any]]) -> List[Segment]:
    """Render ``[[Title]]`` tokens as links to the note with exactly that title."""
    by_title: Dict[str, Mapping[str, Any]] = {}
    for note in notes:
        title = (note.get("title") or "").strip()
        if title:
            by_title.setdefault(title, note)

    segments: List[Segment] = []
    cursor = 0
    for match in BRACKET_RE.finditer(text or ""):
        if match.start() > cursor:
            segments.append(Segment(kind="text", text=text[cursor:match.start()]))
        title = match.group(1).strip()
        note = by_title.get(title)
        if note is None:
            segments.append(Segment(kind="unresolved", text=title))
        else:
            segments.append(
                Segment(
                    kind="link",
                    text=title,
                    entity={
                        "entity_type": EntityType.NOTE.value,
                        "entity_id": note["id"],
                        "title": note.get("title"),
                    },
                )
            )
        cursor = match.end()
    if text and cursor < len(text):
        segments.append(Segment(kind="text", text=text[cursor:]))
    return segments


def candidates_from_store(conn, entity_types: Optional[Iterable[str]] = None) -> List[MentionCandidate]:
    types = [parse_entity_type(t) for t in entity_types] if entity_types else list(EntityType)
    candidates: List[MentionCandidate] = []
    for entity_type in types:
        for entity in list_entities(conn, entity_type):
            if not entity["title"]:
                continue
            synonyms = entity["attributes"].get("synonyms") or []
            candidates.append(
                MentionCandidate(
                    entity_type=entity_type.value,
                    entity_id=entity["id"],
                    name=entity["title"],
                    synonyms=tuple(s for s in synonyms if isinstance(s, str)),
                )
            )
    return candidates


def sync_note_links(conn, note_id: str, content: Optional[str]) -> int:
    """Rewrite a note's reference links to match the ``[[Title]]`` tokens in it.

    Only links with origin ``mention`` are replaced; links made by hand stay.
    """
    conn.execute(
        """
        DELETE FROM links
        WHERE source_type = ? AND source_id = ? AND origin = 'mention'
        """,
        (EntityType.NOTE.value, note_id),
    )
    titles = extract_bracket_refs(content or "")
    if not titles:
        return 0
    placeholders = ",".join(["?"] * len(titles))
    rows = conn.execute(
        f"SELECT id, title FROM notes WHERE title IN ({placeholders}) ORDER BY rowid ASC",
        titles,
    ).fetchall()
    targets: Dict[str, str] = {}
    for row in rows:
        targets.setdefault(row["title"], row["id"])

    inserted = 0
    for title in titles:
        target_id = targets.get(title)
        if not target_id or target_id == note_id:
            continue
        create_link(
            conn,
            EntityType.NOTE.value,
            note_id,
            EntityType.NOTE.value,
            target_id,
            metadata={"linkText": title},
            origin="mention",
        )
        inserted += 1
    logger.debug("Synced %d reference links for note %s", inserted, note_id)
    return inserted
