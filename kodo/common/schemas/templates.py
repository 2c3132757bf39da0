"""
Record Text Templates

Renders learnings and context entries to Markdown at the three detail
levels served to the assistant (compact / timeline / full). The full render
is also the text fed to the embedding model.
"""

from typing import TYPE_CHECKING, Union

if TYPE_CHECKING:
    from .records import ContextEntry, Learning

    Record = Union[ContextEntry, Learning]


LEARNING_TEMPLATE = """# Learning: {title}
ID: {id}
Category: {category} | Confidence: {confidence} | Status: {status}
Created: {created} | Last confirmed: {confirmed}{scope}

## Statement
{statement}

## Evidence
{evidence_block}
"""

CONTEXT_TEMPLATE = """# {title}
ID: {id}
Domain: {domain} | Topic: {topic}{subtopic} | Confidence: {confidence}
Updated: {updated}{source}

{body}

## Tags
{tags}
"""

TIMELINE_EXCERPT_CHARS = 160


def _format_evidence(evidence: list, limit: int = 5) -> str:
    """Format evidence refs with their excerpts"""
    if not evidence:
        return "(no evidence recorded)"

    lines = []
    for i, e in enumerate(evidence[:limit], 1):
        lines.append(f"{i}) {e.ref} ({e.observed_at.strftime('%Y-%m-%d')})")
        if e.excerpt:
            lines.append(f'   "{e.excerpt}"')
    if len(evidence) > limit:
        lines.append(f"... and {len(evidence) - limit} more")
    return "\n".join(lines)


def _format_tags(tags: list) -> str:
    """Format tags as comma-separated"""
    if not tags:
        return "(none)"
    return ", ".join(tags)


def _excerpt(text: str, limit: int = TIMELINE_EXCERPT_CHARS) -> str:
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    return text[: limit - 3].rstrip() + "..."


def _is_learning(record) -> bool:
    return record.id.startswith("lrn_")


def render_full(record: "Record") -> str:
    """
    Render the complete record body.

    The text should be self-contained - reading just this text
    should give full understanding of the record.
    """
    if _is_learning(record):
        text = LEARNING_TEMPLATE.format(
            title=record.title,
            id=record.id,
            category=record.category.value,
            confidence=record.confidence.value.upper(),
            status=record.status.value,
            created=record.created_at.strftime("%Y-%m-%d"),
            confirmed=record.last_confirmed_at.strftime("%Y-%m-%d"),
            scope=f" | Scope: {record.agent_scope}" if record.agent_scope else "",
            statement=record.statement,
            evidence_block=_format_evidence(record.evidence_refs),
        )
    else:
        text = CONTEXT_TEMPLATE.format(
            title=record.title,
            id=record.id,
            domain=record.domain,
            topic=record.topic,
            subtopic=f"/{record.subtopic}" if record.subtopic else "",
            confidence=record.confidence.value.upper(),
            updated=record.updated_at.strftime("%Y-%m-%d"),
            source=f" | Source: {record.source_ref}" if record.source_ref else "",
            body=record.body or "(no body)",
            tags=_format_tags(record.tags),
        )

    # Clean up multiple blank lines
    while "\n\n\n" in text:
        text = text.replace("\n\n\n", "\n\n")

    return text.strip()


def render_compact(record: "Record") -> str:
    """Single summary line per record"""
    if _is_learning(record):
        label = record.category.value
        summary = record.statement
    else:
        label = f"{record.domain}/{record.topic}"
        summary = record.title
    return f"- [{record.confidence.value.upper()}] ({label}) {_excerpt(summary, 200)} <{record.id}>"


def render_timeline(record: "Record") -> str:
    """Dated excerpt; callers order these chronologically"""
    when = record.created_at.strftime("%Y-%m-%d")
    if _is_learning(record):
        head = f"{record.category.value}: {record.statement}"
    else:
        head = f"{record.title}: {record.body}" if record.body else record.title
    return f"- {when} [{record.confidence.value.upper()}] {_excerpt(head)} <{record.id}>"


def render_embedding_text(record: "Record") -> str:
    """Text used to compute a record's embedding"""
    if _is_learning(record):
        return f"{record.category.value}: {record.statement}"
    parts = [record.title, record.body, " ".join(record.tags)]
    return "\n".join(p for p in parts if p)
