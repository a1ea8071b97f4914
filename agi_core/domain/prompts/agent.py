"""
System prompts of the reasoning phases.

Each prompt states the JSON shape it expects back; the orchestrator reads
the ``result`` key of the parsed answer.
"""

from typing import Optional
import json

from agi_core.domain.models.conversation_state import FINAL_ANSWER_TOOL, ConversationState
from agi_core.domain.tool.tool_registry import ToolDescriptor


def _header(state: ConversationState) -> str:
    return (
        f"You are {state.profile.assistant_name}, a personal assistant of "
        f"{state.profile.user_name}."
    )


def _tool_lines(state: ConversationState, only_available: bool = True) -> str:
    lines = [
        f"- {t.name}: {t.description}" for t in state.session.tools
        if t.available or not only_available
    ]
    return "\n".join(lines) or "- (no tools)"


def _task_lines(state: ConversationState) -> str:
    if not state.interaction.tasks:
        return "- (no tasks)"
    lines = []
    for task in state.interaction.tasks:
        lines.append(f"- [{task.status.value}] {task.id} #{task.sequence} {task.name}: {task.description or ''}")
        for action in task.actions:
            outcome = action.error if action.error else action.result
            lines.append(f"    * {action.tool_name}.{action.name} ({action.status.value}) -> {outcome}")
    return "\n".join(lines)


def _thought_lines(state: ConversationState) -> str:
    thoughts = state.thoughts
    return (
        f"Environment: {thoughts.environment or '-'}\n"
        f"Context: {thoughts.context or '-'}\n"
        f"Candidate tools: {', '.join(thoughts.tools) or '-'}\n"
        f"Memory: {'; '.join(thoughts.memory) or '-'}"
    )


def fast_track_prompt(state: ConversationState) -> str:
    return f"""{_header(state)}
Decide whether the latest user message can be answered directly from general
knowledge and the conversation so far, without using any tool, without
looking anything up and without remembering anything new.

Available tools:
{_tool_lines(state)}

Answer with JSON only: {{"_thinking": "<short reasoning>", "result": true|false}}"""


def environment_prompt(state: ConversationState) -> str:
    return f"""{_header(state)}
Describe the user's current environment relevant to the message: time
references, places, devices, ongoing activities. Be brief and factual.

Answer with JSON only: {{"_thinking": "...", "result": "<environment description>"}}"""


def context_prompt(state: ConversationState) -> str:
    return f"""{_header(state)}
Summarize the general context of the user's request: what they want, what
is already known from the conversation, and what is missing.

Answer with JSON only: {{"_thinking": "...", "result": "<context summary>"}}"""


def tools_prompt(state: ConversationState) -> str:
    return f"""{_header(state)}
{_thought_lines(state)}

Pick the tools that may be needed to satisfy the request.
Available tools:
{_tool_lines(state)}

Answer with JSON only: {{"_thinking": "...", "result": ["<tool name>", ...]}}"""


def memory_prompt(state: ConversationState) -> str:
    return f"""{_header(state)}
{_thought_lines(state)}

List facts about the user or past conversations that could help with the
request, one short sentence each. Return an empty list when nothing applies.

Answer with JSON only: {{"_thinking": "...", "result": ["<memory>", ...]}}"""


def task_prompt(state: ConversationState) -> str:
    return f"""{_header(state)}
{_thought_lines(state)}

Break the request down into an ordered list of tasks. Each task should be
achievable with a single tool call. Use no tasks when none are needed.

Available tools:
{_tool_lines(state)}

Answer with JSON only:
{{"_thinking": "...", "result": [{{"name": "<short-name>", "description": "<what to do>"}}, ...]}}"""


def action_prompt(state: ConversationState) -> str:
    return f"""{_header(state)}
{_thought_lines(state)}

Tasks so far:
{_task_lines(state)}

Choose the next action for the first pending task, naming the tool to use.
When everything needed to answer is done, choose the tool "{FINAL_ANSWER_TOOL}".

Tools:
{_tool_lines(state)}
- {FINAL_ANSWER_TOOL}: finish and answer the user

Answer with JSON only:
{{"_thinking": "...", "result": {{"name": "<action name>", "tool_name": "<tool>", "task_id": "<task id>"}}}}"""


def use_prompt(state: ConversationState, tool: Optional[ToolDescriptor] = None) -> str:
    current_tool = state.config.current_tool.name if state.config.current_tool else "unknown"
    current_action = state.config.current_action.name if state.config.current_action else "unknown"
    current_task = state.config.current_task.name if state.config.current_task else "unknown"

    shape = "{}"
    actions = "-"
    if tool is not None:
        shape = json.dumps(tool.input_schema or {}, indent=2)
        actions = ", ".join(tool.actions) or "-"

    tool_context = "\n".join(f"- {note}" for note in state.interaction.tool_context) or "- (none)"

    return f"""{_header(state)}
{_thought_lines(state)}

Current task: {current_task}
Current action: {current_action}
Tool: {current_tool} (actions: {actions})

Previous tool outputs and notes:
{tool_context}

Expected payload schema:
{shape}

Answer with JSON only:
{{"_thinking": "...", "result": {{"action": "<tool action>", "payload": {{...}}}}}}"""


def answer_prompt(state: ConversationState) -> str:
    tool_context = "\n".join(f"- {note}" for note in state.interaction.tool_context)
    sections = [_header(state), "Answer the user directly and concisely."]
    if state.thoughts.environment or state.thoughts.context or state.thoughts.memory:
        sections.append(_thought_lines(state))
    if state.interaction.tasks:
        sections.append(f"Work done for this request:\n{_task_lines(state)}")
    if tool_context:
        sections.append(f"Tool outputs:\n{tool_context}")
    if any(a.error for t in state.interaction.tasks for a in t.actions):
        sections.append("Some actions failed; mention briefly what could not be done.")
    return "\n\n".join(sections)
