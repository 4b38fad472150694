from __future__ import annotations

import pytest

from conftest import EXAMPLE_URL, FakePageGateway, FakeProvider, text_reply, tool_reply
from userscript_orchestrator.api.main import Runtime
from userscript_orchestrator.orchestrator.approval import InvalidTransitionError


def _task(runtime: Runtime, gateway: FakePageGateway):
    target_id = gateway.open(EXAMPLE_URL)
    userscript, conversation = runtime.lifecycle.create_task(target_id)
    return target_id, userscript, conversation


def _script_state(runtime: Runtime, userscript_id: str) -> dict:
    return runtime.store.get_userscript(userscript_id).model_dump(
        include={"name", "match_pattern", "script", "enabled"}
    )


def test_approve_clears_pending_and_enables(
    runtime: Runtime, gateway: FakePageGateway, provider: FakeProvider
) -> None:
    target_id, userscript, conversation = _task(runtime, gateway)
    provider.queue(tool_reply("console.log('hi');"))
    runtime.orchestrator.advance(conversation.id, "say hi", target_id=target_id)
    assert runtime.registry.is_armed(userscript.id)

    approved = runtime.approvals.approve(conversation.id)

    stored = runtime.store.get_conversation(conversation.id)
    assert approved.enabled is True
    assert stored.pending_approval is None
    assert stored.phase == "enabled"
    assert stored.messages[-1].content == "Script approved and enabled."
    assert runtime.registry.is_armed(userscript.id) is False


def test_approve_without_pending_draft_is_rejected(
    runtime: Runtime, gateway: FakePageGateway
) -> None:
    _, _, conversation = _task(runtime, gateway)

    with pytest.raises(InvalidTransitionError):
        runtime.approvals.approve(conversation.id)


def test_approve_keeps_a_generated_name(
    runtime: Runtime, gateway: FakePageGateway, provider: FakeProvider
) -> None:
    target_id, userscript, conversation = _task(runtime, gateway)
    runtime.lifecycle.update(userscript.id, name="Dark Mode Toggle")
    provider.queue(tool_reply("console.log('dark');"))
    runtime.orchestrator.advance(conversation.id, "dark mode", target_id=target_id)

    assert runtime.approvals.approve(conversation.id).name == "Dark Mode Toggle"


def test_revert_is_idempotent(
    runtime: Runtime, gateway: FakePageGateway, provider: FakeProvider
) -> None:
    target_id, userscript, conversation = _task(runtime, gateway)
    provider.queue(tool_reply("console.log('v1');"), tool_reply("console.log('v2');", call_id="call_2"))
    runtime.orchestrator.advance(conversation.id, "version one", target_id=target_id)
    runtime.orchestrator.advance(conversation.id, "version two", target_id=target_id)
    second_user = runtime.store.get_conversation(conversation.id).messages[2]

    runtime.approvals.revert(conversation.id, second_user.id)
    once_script = _script_state(runtime, userscript.id)
    once_messages = [message.id for message in runtime.store.get_conversation(conversation.id).messages]

    runtime.approvals.revert(conversation.id, second_user.id)
    twice_script = _script_state(runtime, userscript.id)
    stored = runtime.store.get_conversation(conversation.id)

    assert once_script == twice_script
    assert once_script["script"] == "console.log('v1');"
    assert [message.id for message in stored.messages] == once_messages
    assert stored.messages[-1].id == second_user.id
    assert stored.pending_approval is None
    assert stored.phase == "no_draft"


def test_revert_rejects_assistant_messages(
    runtime: Runtime, gateway: FakePageGateway, provider: FakeProvider
) -> None:
    target_id, _, conversation = _task(runtime, gateway)
    provider.queue(text_reply("hello"))
    runtime.orchestrator.advance(conversation.id, "hi", target_id=target_id)
    assistant = runtime.store.get_conversation(conversation.id).messages[1]

    with pytest.raises(InvalidTransitionError):
        runtime.approvals.revert(conversation.id, assistant.id)


def test_edit_truncates_future_messages(
    runtime: Runtime, gateway: FakePageGateway, provider: FakeProvider
) -> None:
    target_id, _, conversation = _task(runtime, gateway)
    provider.queue(text_reply("a0"), text_reply("a1"), text_reply("a2"), text_reply("edited reply"))
    for prompt in ("u0", "u1", "u2"):
        runtime.orchestrator.advance(conversation.id, prompt, target_id=target_id)
    before = runtime.store.get_conversation(conversation.id).messages
    edited = before[2]

    runtime.approvals.edit_and_resend(conversation.id, edited.id, "u1 edited", target_id=target_id)

    after = runtime.store.get_conversation(conversation.id).messages
    assert [message.id for message in after[:2]] == [message.id for message in before[:2]]
    assert [message.content for message in after[2:]] == ["u1 edited", "edited reply"]
    assert all(message.id not in {item.id for item in before[2:]} for message in after)


def test_editing_first_message_resets_initial_prompt(
    runtime: Runtime, gateway: FakePageGateway, provider: FakeProvider
) -> None:
    target_id, _, conversation = _task(runtime, gateway)
    provider.queue(text_reply("a0"), text_reply("a0 again"))
    runtime.orchestrator.advance(conversation.id, "first idea", target_id=target_id)
    first = runtime.store.get_conversation(conversation.id).messages[0]

    runtime.approvals.edit_and_resend(conversation.id, first.id, "better idea", target_id=target_id)

    stored = runtime.store.get_conversation(conversation.id)
    assert stored.initial_prompt == "better idea"
    assert [message.content for message in stored.messages] == ["better idea", "a0 again"]


def test_reject_continue_sends_feedback_as_next_turn(
    runtime: Runtime, gateway: FakePageGateway, provider: FakeProvider
) -> None:
    target_id, userscript, conversation = _task(runtime, gateway)
    provider.queue(tool_reply("console.log('blue');"), text_reply("Making it darker."))
    runtime.orchestrator.advance(conversation.id, "blue header", target_id=target_id)

    effect = runtime.approvals.reject(
        conversation.id, mode="continue", target_id=target_id, feedback="darker please"
    )

    assert effect is not None and effect.outcome == "reply"
    stored = runtime.store.get_conversation(conversation.id)
    assert stored.pending_approval is None
    assert [message.content for message in stored.messages[-2:]] == [
        "darker please",
        "Making it darker.",
    ]
    assert stored.messages[-2].script_snapshot.script == "console.log('blue');"
    assert runtime.registry.is_armed(userscript.id) is False


def test_reject_continue_without_feedback_only_clears_pending(
    runtime: Runtime, gateway: FakePageGateway, provider: FakeProvider
) -> None:
    target_id, _, conversation = _task(runtime, gateway)
    provider.queue(tool_reply("console.log('x');"))
    runtime.orchestrator.advance(conversation.id, "x", target_id=target_id)

    effect = runtime.approvals.reject(conversation.id, mode="continue", target_id=target_id)

    stored = runtime.store.get_conversation(conversation.id)
    assert effect is None
    assert stored.pending_approval is None
    assert stored.phase == "iterating"
    assert len(provider.calls) == 1


def test_start_over_replays_initial_prompt_on_blank_conversation(
    runtime: Runtime, gateway: FakePageGateway, provider: FakeProvider
) -> None:
    target_id, userscript, conversation = _task(runtime, gateway)
    provider.queue(tool_reply("console.log('v1');"), text_reply("Starting fresh."))
    runtime.orchestrator.advance(conversation.id, "add a banner", target_id=target_id)

    effect = runtime.approvals.reject(conversation.id, mode="start_over", target_id=target_id)

    assert effect is not None
    stored = runtime.store.get_conversation(conversation.id)
    assert stored.id == conversation.id
    assert stored.initial_prompt == "add a banner"
    assert stored.pending_approval is None
    assert [message.content for message in stored.messages] == ["add a banner", "Starting fresh."]
    assert stored.messages[0].script_snapshot.script == ""
    reset = runtime.store.get_userscript(userscript.id)
    assert reset.script == ""
    assert reset.enabled is False


def test_start_over_before_any_prompt_just_resets(
    runtime: Runtime, gateway: FakePageGateway, provider: FakeProvider
) -> None:
    target_id, _, conversation = _task(runtime, gateway)

    effect = runtime.approvals.reject(conversation.id, mode="start_over", target_id=target_id)

    stored = runtime.store.get_conversation(conversation.id)
    assert effect is None
    assert stored.phase == "reset"
    assert stored.messages == []
    assert provider.calls == []
