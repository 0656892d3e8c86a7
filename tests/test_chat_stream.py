import pytest

import app as orion
from conftest import FakeProvider, FakeSearch, TEST_SYSTEM_PROMPT


def event_types(events):
    return [e["type"] for e in events]


def test_new_conversation_stream(client, register, chat, provider):
    headers, user_id = register()
    resp, events = chat(headers, "Hi")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert event_types(events) == ["start", "delta", "delta", "delta", "done"]

    start = events[0]
    conv = orion.get_conversation(start["conversationId"])
    assert conv["user_id"] == user_id
    assert start["title"] == "Hi"

    assert provider.calls[0] == [
        {"role": "system", "content": TEST_SYSTEM_PROMPT},
        {"role": "user", "content": "Hi"},
    ]


def test_deltas_reconstruct_persisted_reply(client, register, chat, provider):
    provider.chunks = ["The ", "answer ", "is ", "", "42", ".\n", "Done"]
    headers, _ = register()
    _, events = chat(headers, "Explain recursion")

    streamed = "".join(e["text"] for e in events if e["type"] == "delta")
    messages = orion.get_messages(events[0]["conversationId"])
    assert messages[-1]["role"] == "assistant"
    assert messages[-1]["content"] == streamed == "The answer is 42.\nDone"
    assert events[-1] == {"type": "done"}


def test_title_truncated_to_forty_characters(client, register, chat, provider):
    headers, user_id = register()
    message = "Please summarise the plot of the novel Moby Dick in three sentences"
    _, events = chat(headers, message)

    assert events[0]["title"] == message[:40] + "..."
    convs = orion.list_conversations(user_id)
    assert len(convs) == 1
    assert convs[0]["title"] == message[:40] + "..."
    user_messages = [m for m in orion.get_messages(convs[0]["id"]) if m["role"] == "user"]
    assert [m["content"] for m in user_messages] == [message]


def test_title_of_exactly_forty_characters_is_not_marked(client, register, chat):
    headers, _ = register()
    message = "x" * 40
    _, events = chat(headers, message)
    assert events[0]["title"] == message


def test_realtime_question_searches_before_streaming(client, register, chat, provider, search):
    headers, _ = register()
    message = "What's the weather in Paris today?"
    _, events = chat(headers, message)

    types = event_types(events)
    assert types[:2] == ["start", "searching"]
    assert types.index("searching") < types.index("delta")
    assert events[1]["query"] == message
    assert search.queries == [message]

    system = provider.calls[0][0]["content"]
    assert system.startswith(TEST_SYSTEM_PROMPT)
    assert f'[Recent web search results for: "{message}"]' in system
    assert "Summary: It is sunny in Paris today." in system
    assert "Source: https://weather.example/paris" in system

    stored = orion.get_messages(events[0]["conversationId"])
    assert all("Recent web search results" not in m["content"] for m in stored)


def test_plain_question_does_not_search(client, register, chat, provider, search):
    headers, _ = register()
    _, events = chat(headers, "Explain recursion")
    assert "searching" not in event_types(events)
    assert search.queries == []
    assert provider.calls[0][0]["content"] == TEST_SYSTEM_PROMPT


def test_search_failure_is_tolerated(client, register, chat, provider, search):
    search.error = RuntimeError("search backend down")
    headers, _ = register()
    _, events = chat(headers, "Latest news please")

    assert event_types(events)[:2] == ["start", "searching"]
    assert events[-1]["type"] == "done"
    assert provider.calls[0][0]["content"] == TEST_SYSTEM_PROMPT


def test_provider_failure_ends_with_single_error(client, register, chat, provider):
    provider.fail_after = 2
    headers, _ = register()
    _, events = chat(headers, "Explain recursion")

    assert event_types(events) == ["start", "delta", "delta", "error"]
    assert events[-1]["message"] == "Stream failed."
    stored = orion.get_messages(events[0]["conversationId"])
    assert [m["role"] for m in stored] == ["user"]


def test_provider_failure_before_first_token(client, register, chat, provider):
    provider.fail_after = 0
    headers, _ = register()
    _, events = chat(headers, "Explain recursion")
    assert event_types(events) == ["start", "error"]


def test_follow_up_uses_history(client, register, chat, provider):
    headers, _ = register()
    _, first = chat(headers, "Explain recursion")
    conv_id = first[0]["conversationId"]

    _, second = chat(headers, "Give an example", conversationId=conv_id)
    assert second[0]["conversationId"] == conv_id
    assert provider.calls[1][1:] == [
        {"role": "user", "content": "Explain recursion"},
        {"role": "assistant", "content": "Hello, world!"},
        {"role": "user", "content": "Give an example"},
    ]
    assert len(orion.get_messages(conv_id)) == 4


def test_prompt_keeps_only_last_five_history_messages(client, register, chat, provider):
    headers, user_id = register()
    conv = orion.create_conversation(user_id, "Long chat")
    for i in range(12):
        orion.add_message(conv["id"], "user" if i % 2 == 0 else "assistant", f"message {i}")

    chat(headers, "Explain recursion", conversationId=conv["id"])
    prompt = provider.calls[0]
    assert len(prompt) == 1 + 5 + 1
    assert [m["content"] for m in prompt[1:-1]] == [f"message {i}" for i in range(7, 12)]
    assert prompt[-1] == {"role": "user", "content": "Explain recursion"}


def test_attached_file_excerpt_is_stored_full_text_is_sent(client, register, chat, provider):
    headers, _ = register()
    file_text = "A" * 1500 + "TAIL"
    _, events = chat(headers, "Summarise this", fileContent=file_text, fileName="notes.md")

    stored = orion.get_messages(events[0]["conversationId"])[0]["content"]
    assert "[Attached file: notes.md]" in stored
    assert "A" * 1000 + "..." in stored
    assert "TAIL" not in stored
    assert stored.endswith("Summarise this")

    live = provider.calls[0][-1]["content"]
    assert file_text in live
    assert live.endswith("Summarise this")


def test_image_flag_labels_attachment(client, register, chat, provider):
    headers, _ = register()
    chat(headers, "Explain recursion", fileContent="diagram text", fileName="tree.png", isImage=True)
    assert provider.calls[0][-1]["content"].startswith("[Attached image: tree.png]")


def test_foreign_conversation_rejected_before_streaming(client, register, chat, provider):
    alice, _ = register()
    bob, _ = register(email="bob@example.com")
    _, events = chat(alice, "Mine")
    conv_id = events[0]["conversationId"]

    resp, bob_events = chat(bob, "Let me in", conversationId=conv_id)
    assert resp.status_code == 403
    assert resp.json()["detail"] == "Access denied."
    assert bob_events == []
    assert len(orion.get_messages(conv_id)) == 2
    assert len(provider.calls) == 1


def test_unknown_conversation_rejected(client, register, chat):
    headers, user_id = register()
    resp, _ = chat(headers, "Hello?", conversationId="missing-id")
    assert resp.status_code == 403
    assert orion.list_conversations(user_id) == []


@pytest.mark.parametrize("body", [{}, {"message": ""}, {"message": "   "}, {"message": 42}, {"message": None}])
def test_invalid_message_rejected(client, register, body, provider):
    headers, user_id = register()
    resp = client.post("/api/chat/stream", json=body, headers=headers)
    assert resp.status_code == 400
    assert "data:" not in resp.text
    assert orion.list_conversations(user_id) == []
    assert provider.calls == []


def test_stream_requires_auth(client):
    assert client.post("/api/chat/stream", json={"message": "hi"}).status_code == 401


def test_second_turn_on_busy_conversation_is_refused(client, register, chat):
    headers, _ = register()
    _, events = chat(headers, "Explain recursion")
    conv_id = events[0]["conversationId"]

    assert orion.claim_turn(conv_id, "other-worker")
    resp, _ = chat(headers, "Again", conversationId=conv_id)
    assert resp.status_code == 409
    assert len(orion.get_messages(conv_id)) == 2

    orion.release_turn(conv_id, "other-worker")
    resp, again = chat(headers, "Again", conversationId=conv_id)
    assert resp.status_code == 200
    assert again[-1]["type"] == "done"


def test_turn_slot_released_after_failure(client, register, chat, provider):
    provider.fail_after = 1
    headers, _ = register()
    _, events = chat(headers, "Explain recursion")
    assert orion.claim_turn(events[0]["conversationId"], "next")
