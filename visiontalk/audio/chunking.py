import re

WHITESPACE_RUN = re.compile(r"\s+")
# Terminal punctuation followed by whitespace ends a sentence
SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")

DEFAULT_MAX_CHUNK_CHARS = 350


def normalize_whitespace(text: str) -> str:
    return WHITESPACE_RUN.sub(" ", text).strip()


def split_sentences(text: str) -> list[str]:
    """Split normalized text into sentence-like units."""
    return [s for s in SENTENCE_SPLIT.split(normalize_whitespace(text)) if s]


def chunk_text(text: str, max_chars: int = DEFAULT_MAX_CHUNK_CHARS) -> list[str]:
    """Pack sentences into chunks of at most `max_chars` for one synthesis call each.

    Sentences are packed greedily and joined with a single space. A sentence
    that alone exceeds `max_chars` is cut into fixed-size slices with no
    regard for word boundaries. Degenerate input comes back as one chunk.
    """
    if max_chars < 1:
        raise ValueError("max_chars must be positive")

    chunks: list[str] = []
    buffer = ""
    for sentence in split_sentences(text or ""):
        if len(sentence) > max_chars:
            if buffer:
                chunks.append(buffer)
                buffer = ""
            chunks.extend(sentence[i:i + max_chars] for i in range(0, len(sentence), max_chars))
            continue

        if not buffer:
            buffer = sentence
        elif len(buffer) + 1 + len(sentence) <= max_chars:
            buffer = f"{buffer} {sentence}"
        else:
            chunks.append(buffer)
            buffer = sentence

    if buffer:
        chunks.append(buffer)

    if not chunks:
        return [text]
    return chunks
