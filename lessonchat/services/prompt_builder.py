"""
Prompt assembly and citation extraction for grounded answers
"""

import re
import logging
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional, Sequence

from lessonchat.core.config import settings
from lessonchat.services.token_counter import TokenCounter, token_counter
from lessonchat.services.vector_search import RetrievedChunk

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are an AI teaching assistant helping students learn from video courses.

Your role:
- Help students understand course content through conversation
- Answer questions using information from video transcripts
- Provide clear explanations and examples
- Guide students to the right video sections for more detail

Key behaviors:
- Always cite video sources with timestamps when referencing content
- Break down complex concepts into simple terms
- Ask clarifying questions when needed
- If you don't know something, say so - don't make up information

Citation format:
- Use this format: [Video Title @ MM:SS]
- Example: "As explained in [Introduction to Trading @ 3:45]..."
- Only cite the sources listed in the context, using their exact titles"""

NO_CONTEXT_SECTION = (
    "No relevant video content was found for this question. "
    "Answer from general knowledge if you can, say that the course videos do not cover it, "
    "and do not cite any video."
)

DECLINE_MESSAGE = """I don't have access to video content that directly answers your question. Could you:
- Rephrase your question more specifically?
- Let me know which video you're referring to?
- Ask about a topic that was covered in the course videos?

I can only help with questions about the course content that's been uploaded."""

# [Video Title @ 3:45] or [Video Title @ 1:02:03]
CITATION_PATTERN = re.compile(r"\[([^\]@]+)@\s*(\d{1,2}):(\d{2})(?::(\d{2}))?\]")


def format_timestamp(seconds: float) -> str:
    """mm:ss, or h:mm:ss from one hour on"""
    total = max(0, int(seconds))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


@dataclass
class VideoReference:
    video_id: str
    timestamp: int
    title: str
    chunk_id: str

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


@dataclass
class PromptPayload:
    messages: List[Dict[str, str]]
    supplied_chunks: List[RetrievedChunk]
    history_used: int
    trimmed_history: int = 0
    trimmed_chunks: int = 0
    prompt_tokens: int = 0


class PromptBuilder:
    """
    Builds the message list sent to the provider: system instruction, bounded
    history (oldest first) and a final user message holding the context block
    and the question.
    """

    def __init__(
        self,
        model: Optional[str] = None,
        max_output_tokens: Optional[int] = None,
        context_window: Optional[int] = None,
        counter: Optional[TokenCounter] = None,
    ):
        self.model = model or settings.llm_model
        self.max_output_tokens = settings.llm_max_output_tokens if max_output_tokens is None else max_output_tokens
        self.counter = counter or token_counter
        self.context_window = self.counter.context_window(self.model) if context_window is None else context_window

    @property
    def token_budget(self) -> int:
        return self.context_window - self.max_output_tokens

    def build_context_section(self, chunks: Sequence[RetrievedChunk]) -> str:
        if not chunks:
            return NO_CONTEXT_SECTION

        parts = []
        for index, chunk in enumerate(chunks, 1):
            parts.append(
                f"Source {index}: {chunk.video_title} @ {format_timestamp(chunk.start_seconds)}\n"
                f"Similarity: {chunk.similarity * 100:.1f}%\n"
                f"Content: {chunk.text.strip()}"
            )

        return (
            "Here are relevant sections from the course videos:\n\n"
            + "\n\n---\n\n".join(parts)
            + "\n\nUse this information to answer the student's question. Always cite sources with timestamps."
        )

    def _assemble(self, question: str, chunks: Sequence[RetrievedChunk], history: Sequence[Dict[str, str]]) -> List[Dict[str, str]]:
        messages = [{"role": "system", "content": SYSTEM_PROMPT}]
        messages.extend({"role": m["role"], "content": m["content"]} for m in history)
        messages.append({
            "role": "user",
            "content": f"{self.build_context_section(chunks)}\n\nStudent's Question: {question}",
        })
        return messages

    def build(
        self,
        question: str,
        chunks: Sequence[RetrievedChunk],
        history: Sequence[Dict[str, str]],
        max_history_messages: Optional[int] = None,
    ) -> PromptPayload:
        """
        Args:
            question: The learner's question, never trimmed
            chunks: Retrieved chunks
            history: Prior turns, oldest first
            max_history_messages: How many of the most recent turns to keep

        Returns:
            PromptPayload whose ``supplied_chunks`` are exactly the chunks left in the prompt
        """
        limit = settings.max_history_messages if max_history_messages is None else max_history_messages
        kept_history = list(history)[-limit:] if limit > 0 else []
        kept_chunks = sorted(chunks, key=lambda c: c.similarity, reverse=True)
        trimmed_history = 0
        trimmed_chunks = 0

        messages = self._assemble(question, kept_chunks, kept_history)
        tokens = self.counter.count_messages_tokens(messages, self.model)

        while tokens > self.token_budget and kept_history:
            kept_history.pop(0)
            trimmed_history += 1
            messages = self._assemble(question, kept_chunks, kept_history)
            tokens = self.counter.count_messages_tokens(messages, self.model)

        while tokens > self.token_budget and kept_chunks:
            kept_chunks.pop()
            trimmed_chunks += 1
            messages = self._assemble(question, kept_chunks, kept_history)
            tokens = self.counter.count_messages_tokens(messages, self.model)

        if trimmed_history or trimmed_chunks:
            logger.info(f"Prompt over budget: trimmed {trimmed_history} history messages and {trimmed_chunks} chunks")
        if tokens > self.token_budget:
            logger.warning(f"Prompt still exceeds token budget ({tokens} > {self.token_budget}) with only the question left")

        return PromptPayload(
            messages=messages,
            supplied_chunks=kept_chunks,
            history_used=len(kept_history),
            trimmed_history=trimmed_history,
            trimmed_chunks=trimmed_chunks,
            prompt_tokens=tokens,
        )


def _parse_citation_seconds(match: "re.Match") -> int:
    first, second, third = match.group(2), match.group(3), match.group(4)
    if third is not None:
        return int(first) * 3600 + int(second) * 60 + int(third)
    return int(first) * 60 + int(second)


def _title_matches(cited: str, title: str) -> bool:
    cited, title = cited.strip().lower(), (title or "").strip().lower()
    return bool(cited) and bool(title) and (cited in title or title in cited)


def extract_video_references(answer: str, supplied_chunks: Sequence[RetrievedChunk]) -> List[VideoReference]:
    """
    Turn ``[Title @ mm:ss]`` citations into references to chunks that were in the prompt.

    Citations naming no supplied video are dropped. A timestamp outside every
    supplied span of that video snaps to the start of the nearest span, and
    timestamps are clamped to the video's duration.
    """
    references: List[VideoReference] = []
    seen = set()

    for match in CITATION_PATTERN.finditer(answer or ""):
        cited_title = match.group(1)
        seconds = _parse_citation_seconds(match)

        candidates = [c for c in supplied_chunks if _title_matches(cited_title, c.video_title)]
        if not candidates:
            logger.debug(f"Dropping citation to unsupplied video: {cited_title.strip()}")
            continue

        containing = [c for c in candidates if c.start_seconds <= seconds <= c.end_seconds]
        if containing:
            chunk = max(containing, key=lambda c: c.similarity)
            timestamp = seconds
        else:
            chunk = min(candidates, key=lambda c: (abs(c.start_seconds - seconds), -c.similarity))
            timestamp = int(chunk.start_seconds)

        if chunk.video_duration is not None:
            timestamp = min(timestamp, int(chunk.video_duration))
        timestamp = max(0, timestamp)

        key = (chunk.video_id, timestamp)
        if key in seen:
            continue
        seen.add(key)
        references.append(VideoReference(
            video_id=chunk.video_id,
            timestamp=timestamp,
            title=chunk.video_title,
            chunk_id=chunk.chunk_id,
        ))

    return references


# Global prompt builder instance
prompt_builder = PromptBuilder()
