import re

from pydantic import BaseModel, Field


class TextSplitterConfig(BaseModel):
    max_chars: int = Field(default=4500, gt=0)


class SentenceSplitter:
    """Packs sentences into chunks of at most `max_chars`, falling back to words, then hard cuts.

    Only whitespace is changed: joining the chunks and ignoring whitespace yields the input.
    """

    _DELIMS = [
        (re.compile(r"(?<=[.!?])\s+"), " "),  # sentences
        (re.compile(r"\s+"), " "),  # words
    ]

    def __init__(self, config: TextSplitterConfig):
        self.config = config

    def split(self, text: str) -> list[str]:
        return self._split_recursive(text.strip(), 0) if text and text.strip() else []

    def _split_recursive(self, segment: str, level: int) -> list[str]:
        if len(segment) <= self.config.max_chars:
            return [segment]
        if level >= len(self._DELIMS):
            return self._hard_cut(segment)

        regex, delimiter = self._DELIMS[level]
        blocks, current = [], ""
        for part in filter(None, regex.split(segment)):
            to_append = f"{current}{delimiter}{part}" if current else part
            if len(to_append) <= self.config.max_chars:
                current = to_append
                continue
            if current:
                blocks.append(current)
            if len(part) > self.config.max_chars:
                blocks.extend(self._split_recursive(part, level + 1))
                current = ""
            else:
                current = part
        return blocks + [current] if current else blocks

    def _hard_cut(self, segment: str) -> list[str]:
        size = self.config.max_chars
        return [segment[i : i + size] for i in range(0, len(segment), size)]


def chunk_text(text: str, max_chars: int) -> list[str]:
    return SentenceSplitter(TextSplitterConfig(max_chars=max_chars)).split(text)
