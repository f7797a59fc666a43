# thesis_batch/services/payload_encoder.py
"""
Line-delimited (JSONL) request files for the external batch endpoint.

One request record per fragment, keyed by the fragment id as `custom_id`.
Fragment text is sanitized before it is embedded so that the file survives
byte-oriented transport and strict ASCII parsers downstream.
"""
import json
import re
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple, Union

# Quote normalization must run before the generic non-ASCII escape,
# otherwise curly quotes end up escaped instead of turned into '.
_ASCII_REPLACEMENTS: Tuple[Tuple[str, str], ...] = (
    ("[\u2018\u2019\u201a\u201b\u2032]", "'"),
    ("[\u201c\u201d\u201e\u201f\u2033]", '"'),
    ("[\u2013\u2014\u2015\u2212]", "-"),
    ("\u2026", "..."),
    ("[\u00a0\u2007\u202f]", " "),
)
_ASCII_PATTERNS = [(re.compile(p), r) for p, r in _ASCII_REPLACEMENTS]

# C0/C1 controls except \t \n \r, which are normalized separately
_CONTROL_CHARS = re.compile("[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")
_NON_ASCII = re.compile("[^\x00-\x7f]")
_MULTI_SPACE = re.compile(" {2,}")

TAB_WIDTH = 4

PromptBuilder = Callable[[str, Dict[str, Any]], str]


def _escape_code_point(match) -> str:
    cp = ord(match.group(0))
    if cp <= 0xFFFF:
        return "\\u%04x" % cp
    # astral plane -> UTF-16 surrogate pair, each escaped at fixed width
    cp -= 0x10000
    return "\\u%04x\\u%04x" % (0xD800 + (cp >> 10), 0xDC00 + (cp & 0x3FF))


def sanitize_text(text: Optional[str]) -> str:
    """Normalize fragment text into plain, escaped ASCII. Idempotent."""
    if not text:
        return ""
    out = text
    for pattern, replacement in _ASCII_PATTERNS:
        out = pattern.sub(replacement, out)
    out = _CONTROL_CHARS.sub(" ", out)
    out = out.replace("\r\n", "\n").replace("\r", "\n")
    out = out.replace("\t", " " * TAB_WIDTH)
    out = _NON_ASCII.sub(_escape_code_point, out)
    out = _MULTI_SPACE.sub(" ", out)
    return out.strip()


def build_request_record(
    chunk_id: str,
    prompt: str,
    model: str,
    system_prompt: str,
    endpoint: str = "/v1/chat/completions",
    temperature: float = 0.1,
    top_p: float = 0.82,
    max_tokens: int = 8000,
) -> Dict[str, Any]:
    return {
        "custom_id": chunk_id,
        "method": "POST",
        "url": endpoint,
        "body": {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
            "temperature": temperature,
            "top_p": top_p,
            "max_tokens": max_tokens,
        },
    }


def dumps_line(record: Dict[str, Any]) -> str:
    # ensure_ascii keeps every line 7-bit clean; a JSON string never
    # contains a raw newline, so one record is always one line.
    return json.dumps(record, ensure_ascii=True, separators=(",", ":"))


def encode_batch_file(
    chunks: Iterable[Tuple[str, str]],
    build_prompt: PromptBuilder,
    context: Dict[str, Any],
    model: str,
    system_prompt: str,
    endpoint: str = "/v1/chat/completions",
) -> str:
    """
    Serialize ordered (chunk_id, text) pairs into a JSONL document.

    Line i corresponds to the i-th pair. The document ends with a single
    newline; `iter_jsonl` does not turn it into an extra record.
    """
    lines: List[str] = []
    for chunk_id, text in chunks:
        prompt = build_prompt(sanitize_text(text), context)
        record = build_request_record(chunk_id, prompt, model, system_prompt, endpoint=endpoint)
        lines.append(dumps_line(record))
    if not lines:
        raise ValueError("cannot encode an empty batch")
    return "\n".join(lines) + "\n"


def iter_jsonl(data: Union[str, bytes]) -> Iterator[Tuple[int, Union[str, bytes]]]:
    """
    Yield (line_number, raw_line) for every non-blank line, 1-based.

    Records are separated by line feeds only: U+2028, U+2029 and NEL are legal
    unescaped inside JSON strings and must not split a record.
    """
    newline, cr = ("\n", "\r") if isinstance(data, str) else (b"\n", b"\r")
    for number, line in enumerate(data.split(newline), start=1):
        if line.endswith(cr):
            line = line[:-1]
        if line.strip():
            yield number, line
