"""Model request assembly: system context, history replay and the one tool."""

from __future__ import annotations

from typing import Any

from userscript_orchestrator.storage.models import ChatMessage, Conversation, GrabbedElement

EXECUTE_JS_TOOL_NAME = "execute_js"
EXECUTE_JS_ARGUMENT = "jsScript"

EXECUTE_JS_TOOL: dict[str, Any] = {
    "type": "function",
    "function": {
        "name": EXECUTE_JS_TOOL_NAME,
        "description": (
            "Execute JavaScript code on the current page to test changes. "
            "The page will be refreshed and the script will run."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                EXECUTE_JS_ARGUMENT: {
                    "type": "string",
                    "description": "The JavaScript code to execute",
                }
            },
            "required": [EXECUTE_JS_ARGUMENT],
        },
    },
}

TOOL_POLICY = """You are an AI assistant that helps users create custom JavaScript userscripts to modify web pages. You have one tool available:

execute_js(jsScript: string) - Execute JavaScript on the current page. The page will be refreshed and the script will run automatically. The script is saved after each execution, so just keep iterating based on user feedback.

IMPORTANT - Best practices for userscripts:
- Always include a userscript-compatible header block at the top (// ==UserScript== ... // ==/UserScript==) with @name, @match, @description, etc.
- NEVER attach MutationObservers to document.body or the entire DOM - only observe the specific elements you need to monitor
- Follow performance best practices: don't block page rendering, avoid tight loops, minimize DOM queries, cache selectors
- When adding new elements, visually match the style of surrounding elements (fonts, colors, spacing, etc.)
- Use requestAnimationFrame or setTimeout for heavy operations to avoid freezing the page
- Clean up event listeners and observers when no longer needed"""

HTML_DESCRIPTION = "Current page HTML (high-entropy strings like data URLs have been truncated):"
STRUCTURE_DESCRIPTION = (
    "Current page DOM structure (simplified tree representation due to page size):"
)
GRABBED_CONTEXT_INTRO = "\n\nThe user has selected the following elements on the page for context:"


def build_system_prompt(conversation: Conversation, script: str, *, console_log_max_chars: int) -> str:
    if script:
        script_section = (
            "\nCurrent userscript (edit this to make changes):\n"
            f"```javascript\n{script}\n```\n"
        )
    else:
        script_section = "\nNo userscript exists yet - create a new one."
    description = (
        STRUCTURE_DESCRIPTION if conversation.initial_markup_kind == "structure" else HTML_DESCRIPTION
    )
    console_log = conversation.initial_console_log[-console_log_max_chars:] if console_log_max_chars > 0 else ""
    return (
        f"{TOOL_POLICY}\n\n"
        f"Current page URL: {conversation.initial_url}\n"
        f"{script_section}\n"
        f"{description}\n"
        f"{conversation.initial_markup}\n\n"
        f"Recent console logs:\n{console_log}"
    )


def format_grabbed_elements(elements: list[GrabbedElement]) -> str:
    return "\n".join(
        f"\n--- Selected Element {index} ---\nXPath: {element.xpath}\n\nHTML:\n{element.outer_html}"
        for index, element in enumerate(elements, start=1)
    )


def compose_user_content(message: str, grabbed_elements: list[GrabbedElement] | None) -> str:
    """User text as stored, with grabbed-element excerpts appended."""
    if not grabbed_elements:
        return message
    return f"{message}{GRABBED_CONTEXT_INTRO}{format_grabbed_elements(grabbed_elements)}"


def build_model_messages(
    conversation: Conversation,
    script: str,
    *,
    console_log_max_chars: int = 10_000,
) -> list[dict[str, Any]]:
    """System context followed by the replayed history.

    The page screenshot rides on the first user turn only. Element
    screenshots are attached to the latest user turn, the one that supplied
    them.
    """
    messages: list[dict[str, Any]] = [
        {
            "role": "system",
            "content": build_system_prompt(
                conversation, script, console_log_max_chars=console_log_max_chars
            ),
        }
    ]
    user_indexes = [index for index, item in enumerate(conversation.messages) if item.role == "user"]
    first_user = user_indexes[0] if user_indexes else -1
    last_user = user_indexes[-1] if user_indexes else -1

    for index, message in enumerate(conversation.messages):
        if message.role == "user":
            messages.append(
                _user_message(
                    message,
                    page_screenshot=conversation.initial_screenshot if index == first_user else "",
                    with_element_screenshots=index == last_user,
                )
            )
        else:
            messages.append(_assistant_message(message))
        for result in message.tool_results or []:
            messages.append(
                {"role": "tool", "tool_call_id": result.tool_call_id, "content": result.output}
            )
    return messages


def _user_message(
    message: ChatMessage,
    *,
    page_screenshot: str,
    with_element_screenshots: bool,
) -> dict[str, Any]:
    element_shots = [
        element
        for element in (message.grabbed_elements or [])
        if element.screenshot and with_element_screenshots
    ]
    if not page_screenshot and not element_shots:
        return {"role": "user", "content": message.content}

    parts: list[dict[str, Any]] = [{"type": "text", "text": message.content}]
    if page_screenshot:
        parts.append({"type": "image_url", "image_url": {"url": page_screenshot}})
    for element in element_shots:
        parts.append(
            {
                "type": "text",
                "text": (
                    f"\nScreenshot of selected element ({element.tag_name}, "
                    f"xpath: {element.xpath}):"
                ),
            }
        )
        parts.append({"type": "image_url", "image_url": {"url": element.screenshot}})
    return {"role": "user", "content": parts}


def _assistant_message(message: ChatMessage) -> dict[str, Any]:
    payload: dict[str, Any] = {"role": "assistant", "content": message.content}
    if message.tool_calls:
        payload["tool_calls"] = [call.model_dump() for call in message.tool_calls]
    return payload
