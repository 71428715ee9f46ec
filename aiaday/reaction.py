"""Reaction engine: how a person responds to a situation.

The LLM is shown the person's memories, identity, state of mind and the
situation, and must answer with one or more calls to the person-action
tools below. Each tool call is decoded into a PersonAction; anything the
decoder does not recognise fails the whole reaction.
"""

from __future__ import annotations

import logging
from typing import Any

from aiaday.errors import NoActionReturned, PersonActionError
from aiaday.llm import LLM, ChatMessage, ToolCall, ToolDeclaration, ToolParameter
from aiaday.models import Idle, PersonAction, SayInScene, Wait

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a person simulation framework. You have deep insights into the human "
    "mind and are very good at predicting people's reactions to given situations. "
    "When given a description of a person, their state of mind, and some of their "
    "recent memories, respond as the person would in this situation by choosing "
    "one or more of the available actions."
)


# ---------------------------------------------------------------------------
# Tool catalogue
# ---------------------------------------------------------------------------

SAY_TOOL = ToolDeclaration(
    name="say",
    description="Make the person say something to specified recipients.",
    parameters=[
        ToolParameter(name="comment", description="The comment to say", kind="string"),
        ToolParameter(
            name="recipients",
            description="The names of the people the comment is meant for",
            kind="string_array",
        ),
    ],
)

WAIT_TOOL = ToolDeclaration(
    name="wait",
    description="Make the person wait for a specified duration.",
    parameters=[
        ToolParameter(
            name="duration_ms",
            description="How long to wait, in milliseconds",
            kind="integer",
        ),
        ToolParameter(
            name="and_then",
            description="What the person means to do once the wait is over",
            kind="string",
            required=False,
        ),
    ],
)

IDLE_TOOL = ToolDeclaration(
    name="idle",
    description="Let the person do nothing in particular for a while.",
)

PERSON_ACTION_TOOLS: list[ToolDeclaration] = [SAY_TOOL, WAIT_TOOL, IDLE_TOOL]


# ---------------------------------------------------------------------------
# Tool call decoding
# ---------------------------------------------------------------------------

def _check_parameters(call: ToolCall, tool: ToolDeclaration) -> None:
    known = {p.name for p in tool.parameters}
    for key in call.arguments:
        if key not in known:
            raise PersonActionError(
                "unrecognized_parameter",
                f"Unrecognized parameter '{key}' for action '{call.name}'",
            )
    for p in tool.parameters:
        if p.required and p.name not in call.arguments:
            raise PersonActionError(
                "parameter_missing",
                f"Missing required parameter '{p.name}' for action '{call.name}'",
            )


def _unexpected(call: ToolCall, parameter: str, wanted: str) -> PersonActionError:
    return PersonActionError(
        "unexpected_type",
        f"Unexpected type for parameter '{parameter}' in action '{call.name}'. "
        f"Expected type: {wanted}",
    )


def _as_int(call: ToolCall, parameter: str, value: Any) -> int:
    if isinstance(value, bool):
        raise _unexpected(call, parameter, "integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    raise _unexpected(call, parameter, "integer")


def action_from_tool_call(call: ToolCall) -> PersonAction:
    if call.name == "say":
        _check_parameters(call, SAY_TOOL)
        comment = call.arguments["comment"]
        if not isinstance(comment, str):
            raise _unexpected(call, "comment", "string")
        recipients = call.arguments["recipients"]
        if not isinstance(recipients, list) or not all(isinstance(r, str) for r in recipients):
            raise _unexpected(call, "recipients", "array of strings")
        return SayInScene(comment=comment)

    if call.name == "wait":
        _check_parameters(call, WAIT_TOOL)
        duration_ms = _as_int(call, "duration_ms", call.arguments["duration_ms"])
        and_then = call.arguments.get("and_then")
        if and_then is not None and not isinstance(and_then, str):
            raise _unexpected(call, "and_then", "string")
        return Wait(duration_ms=max(duration_ms, 0))

    if call.name == "idle":
        _check_parameters(call, IDLE_TOOL)
        return Idle()

    raise PersonActionError("unrecognized_action", f"Unrecognized action: {call.name}")


def summarize_actions(actions: list[PersonAction]) -> str:
    """One line per action, in the order they were chosen."""
    lines: list[str] = []
    for action in actions:
        if isinstance(action, SayInScene):
            lines.append(f"Spoke in scene: {action.comment}")
        else:
            lines.append(f"Waited for {action.duration_ms / 1000:g} seconds.")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# ReactionEngine
# ---------------------------------------------------------------------------

def _reaction_prompt(
    memories: list[str], identity: str, state_of_mind: str, situation: str
) -> str:
    memory_lines = "\n".join(f"- {m}" for m in memories) if memories else "(none)"
    return (
        f"Memories:\n{memory_lines}\n\n"
        f"Person identity: {identity}\n\n"
        f"State of mind: {state_of_mind}\n\n"
        f"Situation: {situation}"
    )


class ReactionEngine:
    def __init__(self, llm: LLM) -> None:
        self._llm = llm

    async def get_reaction(
        self,
        memories: list[str],
        identity: str,
        state_of_mind: str,
        situation: str,
    ) -> list[PersonAction]:
        response = await self._llm.chat(
            [
                ChatMessage(role="system", content=SYSTEM_PROMPT),
                ChatMessage(
                    role="user",
                    content=_reaction_prompt(memories, identity, state_of_mind, situation),
                ),
            ],
            tools=PERSON_ACTION_TOOLS,
        )
        calls = response.maybe_tool_calls()
        if not calls:
            raise NoActionReturned()
        actions = [action_from_tool_call(call) for call in calls]
        logger.debug("reaction: %s", ", ".join(a.kind for a in actions))
        return actions
