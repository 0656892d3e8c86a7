import json
import re

import quickjs

import app as orion

DECODER_SOURCE = re.search(r"class EventStreamDecoder \{.*?\n\}\n", orion.UI_HTML, re.S).group(0)

def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["ok"] is True

def test_index_serves_chat_client(client):
    resp = client.get("/")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/html")
    page = resp.text
    assert "class EventStreamDecoder" in page
    assert "class ChatSession" in page
    assert "/api/chat/stream" in page
    assert "/api/upload" in page

def decode_reads(*reads):
    """Feed `reads` through a fresh decoder; return events per push, then flush, then the buffer."""
    script = (
        "(function () {\n"
        + DECODER_SOURCE
        + "const decoder = new EventStreamDecoder('data:');\n"
        + f"const out = {json.dumps(list(reads))}.map(r => decoder.push(r));\n"
        + "const buffered = decoder.buffer;\n"
        + "out.push(decoder.flush());\n"
        + "return JSON.stringify({out: out, buffered: buffered});\n"
        + "})()"
    )
    result = json.loads(quickjs.Context().eval(script))
    return result["out"][:-1], result["out"][-1], result["buffered"]

def test_decoder_joins_frame_split_across_reads():
    pushes, flushed, _ = decode_reads('data: {"type":"del', 'ta","text":"hi"}\n\n')
    assert pushes == [[], [{"type": "delta", "text": "hi"}]]
    assert flushed == []

def test_decoder_handles_several_frames_in_one_read():
    pushes, _, _ = decode_reads(
        'data: {"type":"start","conversationId":"c1"}\n\ndata: {"type":"delta","text":"a"}\n\ndata: {"type":"done"}\n\n'
    )
    assert [e["type"] for e in pushes[0]] == ["start", "delta", "done"]

def test_decoder_holds_unterminated_tail_until_flush():
    pushes, flushed, buffered = decode_reads('data: {"type":"delta","text":"x"}\n\ndata: {"type":"do')
    assert pushes == [[{"type": "delta", "text": "x"}]]
    assert buffered == 'data: {"type":"do'
    # an incomplete frame cannot be parsed and is dropped on flush
    assert flushed == []

    pushes, flushed, _ = decode_reads('data: {"type":"done"}')
    assert pushes == [[]]
    assert flushed == [{"type": "done"}]

def test_decoder_ignores_other_lines_and_bad_json():
    pushes, _, _ = decode_reads(
        ': keep-alive\nevent: message\n\ndata: {not json}\n\ndata: {"type":"done"}\r\n\r\n'
    )
    assert pushes == [[{"type": "done"}]]
