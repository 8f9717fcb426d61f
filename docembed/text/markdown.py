import re
from typing import List, Optional


# --------------------------------------------------
# Markdown -> plain semantic text
# --------------------------------------------------
_HEADING_LINE = re.compile(r"^\s*#\s+(.+)\s*$")


def _keep_descriptive_alt(match: re.Match) -> str:
    alt = match.group(1)
    # Alt text with 3+ words is probably descriptive
    return f" {alt} " if len(alt.split()) > 2 else " "


_CLEANUP_RULES = [
    # fenced code blocks
    (re.compile(r"```[\s\S]*?```"), " "),
    (re.compile(r"~~~[\s\S]*?~~~"), " "),
    # inline code
    (re.compile(r"`[^`\n]+`"), " "),
    # images, links, reference links and their definitions
    (re.compile(r"!\[([^\]]*)\]\([^)]*\)"), _keep_descriptive_alt),
    (re.compile(r"\[([^\]]*)\]\([^)]*\)"), r" \1 "),
    (re.compile(r"\[([^\]]*)\]\[[^\]]*\]"), r" \1 "),
    (re.compile(r"^\[[^\]]+\]:\s*\S+.*$", re.MULTILINE), ""),
    # bare urls
    (re.compile(r"https?://\S+", re.IGNORECASE), " "),
    (re.compile(r"www\.\S+", re.IGNORECASE), " "),
    # html tags
    (re.compile(r"<[^>]+>"), " "),
    # heading markers (text is kept)
    (re.compile(r"^#{1,6}\s+", re.MULTILINE), ""),
    # bold, italic, strikethrough
    (re.compile(r"(\*\*|__)(.*?)\1"), r" \2 "),
    (re.compile(r"(\*|_)([^*_]+)\1"), r" \2 "),
    (re.compile(r"~~([^~]+)~~"), r" \1 "),
    # blockquotes, horizontal rules, list markers, task boxes
    (re.compile(r"^>\s*", re.MULTILINE), ""),
    (re.compile(r"^[-*_]{3,}\s*$", re.MULTILINE), " "),
    (re.compile(r"^\s*[-*+]\s+", re.MULTILINE), " "),
    (re.compile(r"^\s*\d+\.\s+", re.MULTILINE), " "),
    (re.compile(r"\[[ x]\]\s*", re.IGNORECASE), " "),
    # footnotes
    (re.compile(r"\[\^[^\]]+\]"), " "),
    (re.compile(r"^\[\^[^\]]+\]:.*$", re.MULTILINE), ""),
    # leftover markdown punctuation
    (re.compile(r"[\\|`~^]"), " "),
]


def clean_markdown_for_embedding(raw_markdown: str) -> str:
    """
    Strip markdown syntax and keep the semantic text.

    Code, urls and html are dropped; link text, heading text and emphasized
    text are kept. Whitespace is collapsed to single spaces.
    """
    text = raw_markdown
    for pattern, replacement in _CLEANUP_RULES:
        text = pattern.sub(replacement, text)
    return re.sub(r"\s+", " ", text).strip()


# --------------------------------------------------
# Headings
# --------------------------------------------------
def first_heading(markdown: str, max_length: Optional[int] = None) -> Optional[str]:
    """First line that looks like `# Title`, trimmed (and cut to max_length)."""
    for line in re.split(r"\r?\n", markdown or ""):
        match = _HEADING_LINE.match(line)
        if match and match.group(1).strip():
            title = match.group(1).strip()
            return title[:max_length] if max_length is not None else title
    return None


def infer_title(markdown: str, fallback: str = "Untitled") -> str:
    """Heading title, else the first non-empty line, else fallback (120 chars max)."""
    heading = first_heading(markdown, max_length=120)
    if heading:
        return heading
    for line in re.split(r"\r?\n", markdown or ""):
        if line.strip():
            return line.strip()[:120]
    return fallback


# --------------------------------------------------
# Passage text / excerpts
# --------------------------------------------------
PASSAGE_MAX_LENGTH = 1800  # ~512 tokens for multilingual-e5-small


def prepare_passage_text(title: str, raw_markdown: str, max_length: int = PASSAGE_MAX_LENGTH) -> str:
    """Title first (it carries the most weight), then the cleaned body."""
    combined = f"{title}. {clean_markdown_for_embedding(raw_markdown)}"
    if len(combined) > max_length:
        return combined[:max_length] + "..."
    return combined


def extract_excerpt(raw_markdown: str, max_length: int = 160) -> str:
    cleaned = clean_markdown_for_embedding(raw_markdown)
    if len(cleaned) <= max_length:
        return cleaned

    truncated = cleaned[:max_length]
    last_space = truncated.rfind(" ")
    # Cut on a word boundary unless that throws away too much
    if last_space > max_length * 0.7:
        return truncated[:last_space] + "..."
    return truncated + "..."


# --------------------------------------------------
# Chunking for long documents
# --------------------------------------------------
def chunk_document(
    raw_markdown: str,
    max_chunk_size: int = 1500,
    overlap: int = 200,
) -> List[str]:
    """Split cleaned text into overlapping chunks, preferring sentence ends."""
    if overlap >= max_chunk_size:
        raise ValueError("overlap must be smaller than max_chunk_size")

    cleaned = clean_markdown_for_embedding(raw_markdown)
    if len(cleaned) <= max_chunk_size:
        return [cleaned]

    chunks = []
    start = 0
    while start < len(cleaned):
        end = start + max_chunk_size

        if end < len(cleaned):
            search_area = cleaned[start:end]
            sentence_end = max(
                search_area.rfind(". "),
                search_area.rfind("? "),
                search_area.rfind("! "),
            )
            if sentence_end > max_chunk_size * 0.5:
                end = start + sentence_end + 1

        chunk = cleaned[start:end].strip()
        if chunk:
            chunks.append(chunk)

        if end >= len(cleaned):
            break
        start = end - overlap

    return chunks
