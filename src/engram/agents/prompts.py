"""Prompt templates for the four extraction call shapes.

- ``init``: first call of a run for a brand-new session
- ``continuation``: first call of a run for a session that already saw prompts
- ``observation``: one tool invocation to turn into observations
- ``summarize``: end-of-turn digest request
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

from jinja2 import Environment, StrictUndefined

from engram.session.context import SessionContext
from engram.store.pending import PendingMessage

_env = Environment(undefined=StrictUndefined, trim_blocks=True, lstrip_blocks=True)

_OBSERVATION_FORMAT = """\
<observation>
  <type>one of: bugfix, feature, refactor, change, discovery, decision</type>
  <title>short title</title>
  <subtitle>one sentence</subtitle>
  <narrative>what happened and why it matters</narrative>
  <facts><fact>...</fact></facts>
  <concepts><concept>...</concept></concepts>
  <files_read><file>...</file></files_read>
  <files_modified><file>...</file></files_modified>
</observation>"""

INIT_TEMPLATE = _env.from_string(
    """\
You are a memory observer for a coding session in project "{{ project }}".
Session: {{ content_session_id }}

The user asked:
<user_request>
{{ user_prompt }}
</user_request>

You will receive tool invocations performed by the coding assistant, one per
message. For each one, record what was learned or changed as zero or more
observations in this exact format:

{{ observation_format }}

Only record observations worth remembering in a later session. If a tool
call carries nothing of lasting value, reply with no observation blocks.
"""
)

CONTINUATION_TEMPLATE = _env.from_string(
    """\
The user has sent prompt #{{ prompt_number }} in project "{{ project }}":
<user_request>
{{ user_prompt }}
</user_request>

Keep recording observations for the tool invocations that follow, in the
same format as before:

{{ observation_format }}
"""
)

OBSERVATION_TEMPLATE = _env.from_string(
    """\
<observed_from_primary_session>
  <what_happened>{{ tool_name }}</what_happened>
  <occurred_at>{{ occurred_at }}</occurred_at>
{% if cwd %}
  <working_directory>{{ cwd }}</working_directory>
{% endif %}
  <parameters>{{ tool_input }}</parameters>
  <outcome>{{ tool_response }}</outcome>
</observed_from_primary_session>
"""
)

SUMMARIZE_TEMPLATE = _env.from_string(
    """\
The coding assistant finished responding to the user in project "{{ project }}".

Original request:
<user_request>
{{ user_prompt }}
</user_request>
{% if last_assistant_message %}

Final assistant message:
<assistant_message>
{{ last_assistant_message }}
</assistant_message>
{% endif %}

Write a progress summary of this turn in this exact format:

<summary>
  <request>what the user asked for</request>
  <investigated>what was explored</investigated>
  <learned>what was learned</learned>
  <completed>what was done</completed>
  <next_steps>what remains</next_steps>
  <notes>anything else</notes>
  <files_read><file>...</file></files_read>
  <files_modified><file>...</file></files_modified>
</summary>

If nothing happened worth summarizing, reply with <skip_summary reason="..."/> instead.
"""
)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def build_init_prompt(ctx: SessionContext) -> str:
    return INIT_TEMPLATE.render(
        project=ctx.project,
        content_session_id=ctx.content_session_id,
        user_prompt=ctx.user_prompt or "",
        observation_format=_OBSERVATION_FORMAT,
    )


def build_continuation_prompt(ctx: SessionContext) -> str:
    return CONTINUATION_TEMPLATE.render(
        project=ctx.project,
        prompt_number=ctx.prompt_number,
        user_prompt=ctx.user_prompt or "",
        observation_format=_OBSERVATION_FORMAT,
    )


def build_session_prompt(ctx: SessionContext) -> str:
    """Init prompt for a fresh session, continuation prompt once prompts were counted."""
    if ctx.prompt_number <= 1 and not ctx.history:
        return build_init_prompt(ctx)
    return build_continuation_prompt(ctx)


def build_observation_prompt(message: PendingMessage) -> str:
    occurred_at = datetime.fromtimestamp(message.created_at_epoch / 1000, tz=UTC)
    return OBSERVATION_TEMPLATE.render(
        tool_name=message.tool_name or "unknown",
        occurred_at=occurred_at.isoformat(),
        cwd=message.cwd,
        tool_input=_as_text(message.tool_input),
        tool_response=_as_text(message.tool_response),
    )


def build_summarize_prompt(ctx: SessionContext, message: PendingMessage) -> str:
    return SUMMARIZE_TEMPLATE.render(
        project=ctx.project,
        user_prompt=ctx.user_prompt or "",
        last_assistant_message=message.last_assistant_message or "",
    )


def build_message_prompt(ctx: SessionContext, message: PendingMessage) -> str:
    """Dispatch on the message kind."""
    if message.message_type == "summarize":
        return build_summarize_prompt(ctx, message)
    return build_observation_prompt(message)
