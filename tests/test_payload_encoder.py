import json

import pytest

from thesis_batch.services.payload_encoder import (
    build_request_record,
    encode_batch_file,
    iter_jsonl,
    sanitize_text,
)


def _prompt(text, context):
    return f"[{context['analysis_type']}] {text}"


def test_sanitize_replaces_typographic_punctuation():
    assert sanitize_text("“ciao” ‘a’ — fine…") == "\"ciao\" 'a' - fine..."


def test_sanitize_normalizes_whitespace_and_controls():
    raw = "riga1\r\nriga2\rriga3\tcol\x07x  y   "
    assert sanitize_text(raw) == "riga1\nriga2\nriga3 col x y"


def test_sanitize_escapes_non_ascii():
    assert sanitize_text("perché") == "perch\\u00e9"
    # astral code points become a surrogate pair
    assert sanitize_text("\U0001F600") == "\\ud83d\\ude00"


@pytest.mark.parametrize("text", [
    "L’università — “tesi”…\t\tfine\r\n",
    "già escapato \\u00e0 e   spazi",
    "\U0001F4DA libri",
    "",
])
def test_sanitize_is_idempotent(text):
    once = sanitize_text(text)
    assert sanitize_text(once) == once
    assert once.isascii()


def test_request_record_shape():
    record = build_request_record("c1", "prompt", "model-x", "system")
    assert record["custom_id"] == "c1"
    assert record["method"] == "POST"
    assert record["url"] == "/v1/chat/completions"
    body = record["body"]
    assert body["model"] == "model-x"
    assert [m["role"] for m in body["messages"]] == ["system", "user"]
    assert body["temperature"] == 0.1
    assert body["top_p"] == 0.82
    assert body["max_tokens"] == 8000


def test_encode_preserves_order_and_line_count():
    chunks = [("c3", "terzo"), ("c1", "primo è"), ("c2", "secondo")]
    payload = encode_batch_file(chunks, _prompt, {"analysis_type": "k"}, "m", "sys")

    assert payload.endswith("\n")
    assert payload.isascii()
    lines = list(iter_jsonl(payload))
    assert len(lines) == 3
    records = [json.loads(line) for _, line in lines]
    assert [r["custom_id"] for r in records] == ["c3", "c1", "c2"]
    assert records[1]["body"]["messages"][1]["content"] == "[k] primo \\u00e8"


def test_encode_keeps_embedded_newlines_inside_one_record():
    payload = encode_batch_file([("c1", "a\nb\nc")], _prompt, {"analysis_type": "k"}, "m", "sys")
    assert payload.count("\n") == 1


def test_encode_rejects_empty_input():
    with pytest.raises(ValueError):
        encode_batch_file([], _prompt, {}, "m", "sys")


def test_iter_jsonl_skips_blank_lines():
    assert list(iter_jsonl('{"a":1}\n\n  \n{"b":2}\n')) == [(1, '{"a":1}'), (4, '{"b":2}')]


def test_iter_jsonl_splits_on_line_feeds_only():
    record = json.dumps({"content": "riga \u2028 separata \u2029 paragrafo \u0085 nel"}, ensure_ascii=False)
    data = record + "\r\n" + '{"b":2}\n'

    lines = list(iter_jsonl(data))

    assert [n for n, _ in lines] == [1, 2]
    assert json.loads(lines[0][1])["content"].count("\u2028") == 1
    assert list(iter_jsonl(data.encode("utf-8")))[1] == (2, b'{"b":2}')
