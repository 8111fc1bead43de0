"""Render retrieved passages into the prompt context and build the grounded answer messages."""

from typing import Any

from ragchat.core.models import Source, Turn

SEPARATOR = "\n\n---\n\n"
NO_TEXT = "[no text stored in metadata]"

ANSWER_SYSTEM_PROMPT = (
    "You are a helpful assistant that must answer using ONLY the provided context.\n"
    "If the context does not contain the answer, say you don't know.\n"
    "Always indicate which source(s) you used in your answer.\n"
    "Do NOT guess or fabricate facts. If unsure, say you are unsure."
)


def source_title(metadata: dict[str, Any]) -> str:
    return metadata.get("source_path") or metadata.get("doc_id") or "Unknown document"


def render_context(sources: list[Source] | tuple[Source, ...]) -> str:
    """
    One block per source in rank order: "Source i: <title> (pages F-T)" then the
    stored snippet. The page suffix needs both page bounds (0 is a valid page).
    No truncation here.
    """
    blocks = []
    for i, src in enumerate(sources, 1):
        meta = src.metadata or {}
        page_from = meta.get("page_from")
        page_to = meta.get("page_to")
        pages = f" (pages {page_from}-{page_to})" if page_from is not None and page_to is not None else ""
        header = f"Source {i}: {source_title(meta)}{pages}"
        blocks.append(f"{header}\n{meta.get('text') or NO_TEXT}")
    return SEPARATOR.join(blocks)


def history_messages(history: list[Turn]) -> list[dict[str, str]]:
    return [{"role": t.role, "content": t.content} for t in history]


def build_answer_messages(message: str, history: list[Turn], context: str) -> list[dict[str, str]]:
    user_prompt = f"User question:\n{message}\n\nContext:\n{context}"
    return [
        {"role": "system", "content": ANSWER_SYSTEM_PROMPT},
        *history_messages(history),
        {"role": "user", "content": user_prompt},
    ]
