"""Helpers for flattening session transcripts into plain text.

A transcript is an ordered list of ``{"role": ..., "content": ...}``
messages. ``content`` is either a string or a list of parts such as
``{"type": "text", "text": ...}`` or ``{"type": "tool_use", ...}``.
"""

import json
from typing import Dict, List, Optional

ASSISTANT = 'assistant'


def message_text(message: Dict) -> str:
    """Flatten one message's content to text. Tool parts are rendered
    compactly so keyword classifiers can still see them."""
    content = message.get('content')
    if content is None:
        return ''
    if isinstance(content, str):
        return content
    if isinstance(content, dict):
        content = [content]

    parts = []
    for part in content:
        if isinstance(part, str):
            parts.append(part)
            continue
        if not isinstance(part, dict):
            continue
        kind = part.get('type')
        if kind == 'text':
            parts.append(part.get('text') or '')
        elif kind == 'tool_use':
            parts.append(f"[tool_use {part.get('name', '')}] "
                         f"{json.dumps(part.get('input') or {})}")
        elif kind == 'tool_result':
            inner = part.get('content')
            if isinstance(inner, (list, dict)):
                inner = message_text({'content': inner})
            parts.append(f"[tool_result] {inner or ''}")
        elif 'text' in part:
            parts.append(str(part['text']))
    return '\n'.join(p for p in parts if p)


def transcript_text(messages: List[Dict], role: Optional[str] = None) -> str:
    """Join every message (optionally of one role) into a single text."""
    return '\n\n'.join(message_text(m) for m in messages
                       if role is None or m.get('role') == role)


def last_assistant_message(messages: List[Dict]) -> Optional[str]:
    for message in reversed(messages):
        if message.get('role') == ASSISTANT:
            text = message_text(message).strip()
            if text:
                return text
    return None
