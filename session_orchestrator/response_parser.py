"""Extract structured envelopes from free-form agent output.

Agents are asked to wrap machine-readable replies in a pair of markers::

    <<<ORCHESTRATOR_RESPONSE>>>
    {"phase": "analysis", "data": {...}}
    <<<END_ORCHESTRATOR_RESPONSE>>>

Nothing here raises on bad input. Every outcome is a ``ParsedResponse``
that is either not found, found and valid, or found with an ``error``.
"""

import json
import re
from typing import Callable, Dict, List, Optional

from session_orchestrator.models import (
    FallbackDetection, ParsedResponse, ValidationResult,
)

START_MARKER = '<<<ORCHESTRATOR_RESPONSE>>>'
END_MARKER = '<<<END_ORCHESTRATOR_RESPONSE>>>'

PHASE_SCHEMAS: Dict[str, Dict] = {
    'analysis': {
        'required': ['summary', 'recommended_splits'],
        'optional': ['key_files', 'estimated_complexity', 'notes',
                     'warnings', 'components'],
    },
    'task_list': {
        'required': ['tasks'],
        'optional': ['total_tasks', 'parallelizable_groups',
                     'execution_order'],
        'task_required': ['id', 'title', 'description'],
        'task_optional': ['scope', 'priority', 'dependencies',
                          'estimated_tokens', 'type'],
    },
    'progress': {
        'required': ['task_id', 'status'],
        'optional': ['progress_percent', 'current_action', 'files_processed',
                     'files_total', 'output_preview'],
    },
    'completion': {
        'required': ['task_id', 'status'],
        'optional': ['summary', 'output_files', 'output', 'error',
                     'warnings', 'metrics'],
    },
    'aggregation': {
        'required': ['status'],
        'optional': ['summary', 'conflicts', 'merged_output', 'output_files'],
    },
    'verification': {
        'required': ['status'],
        'optional': ['summary', 'issues'],
    },
}

COMPLETION_STATUSES = ('success', 'partial', 'failed', 'timeout')

# Heuristic phase hints for agents that ignored the envelope format.
FALLBACK_PATTERNS: Dict[str, List] = {
    'analysis': [
        re.compile(r'analysis\s+(?:is\s+)?(?:complete|done|finished)', re.I),
        re.compile(r'(?:found|identified)\s+\d+\s+(?:components?|modules?|files?)', re.I),
        re.compile(r'recommend(?:ing|s?)\s+\d+\s+(?:tasks?|splits?)', re.I),
    ],
    'task_list': [
        re.compile(r'(?:task|breakdown)\s+list\s+(?:is\s+)?(?:ready|complete|created)', re.I),
        re.compile(r'created?\s+\d+\s+tasks?', re.I),
        re.compile(r'here\s+(?:are|is)\s+the\s+task', re.I),
    ],
    'progress': [
        re.compile(r'working\s+on', re.I),
        re.compile(r'currently\s+(?:processing|documenting|analyzing)', re.I),
        re.compile(r'progress:\s*\d+%', re.I),
    ],
    'completion': [
        re.compile(r'task\s+(?:is\s+)?(?:complete|done|finished)', re.I),
        re.compile(r'successfully\s+(?:completed|created|documented)', re.I),
    ],
    'error': [
        re.compile(r"(?:error|failed|could\s*n[o']t)", re.I),
        re.compile(r'unable\s+to', re.I),
    ],
}

_TRAILING_COMMA = re.compile(r',(\s*[\]}])')
_BARE_KEY = re.compile(r'([{,]\s*)([A-Za-z_][A-Za-z0-9_]*)(\s*:)')
_SINGLE_QUOTED = re.compile(r"([:\[,]\s*)'([^'\n]*)'")
_BARE_VALUE = re.compile(r':\s*([A-Za-z_][A-Za-z0-9_]*)\s*([,}\]])')
_LINE_COMMENT = re.compile(r'(^|\s)//[^\n]*')
_BLOCK_COMMENT = re.compile(r'/\*.*?\*/', re.S)
_OBJECT = re.compile(r'\{.*\}', re.S)


def fix_common_json_errors(text: str) -> str:
    """Best-effort repair of the JSON mistakes agents usually make."""
    fixed = text.lstrip('\ufeff')
    fixed = _BLOCK_COMMENT.sub('', fixed)
    fixed = _LINE_COMMENT.sub(r'\1', fixed)
    fixed = _TRAILING_COMMA.sub(r'\1', fixed)
    fixed = _BARE_KEY.sub(r'\1"\2"\3', fixed)
    fixed = _SINGLE_QUOTED.sub(r'\1"\2"', fixed)

    def quote_value(match):
        value, terminator = match.group(1), match.group(2)
        if value in ('true', 'false', 'null'):
            return match.group(0)
        return f': "{value}"{terminator}'

    fixed = _BARE_VALUE.sub(quote_value, fixed)
    return fixed.strip()


def _loads(text: str):
    try:
        return json.loads(text)
    except ValueError:
        return None


def extract_json(text: str) -> Optional[Dict]:
    """Decode ``text`` as a JSON object, repairing it if needed.

    Returns ``None`` when nothing usable can be recovered.
    """
    if not text or not isinstance(text, str):
        return None
    trimmed = text.strip()

    for candidate in (trimmed, fix_common_json_errors(trimmed)):
        value = _loads(candidate)
        if isinstance(value, dict):
            return value

    match = _OBJECT.search(trimmed)
    if match:
        for candidate in (match.group(0), fix_common_json_errors(match.group(0))):
            value = _loads(candidate)
            if isinstance(value, dict):
                return value
    return None


# -- per-phase field checks ---------------------------------------------------

def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_analysis(data: Dict, result: ValidationResult):
    if 'recommended_splits' in data and not _is_number(data['recommended_splits']):
        result.warnings.append('recommended_splits should be a number')
    if 'key_files' in data and not isinstance(data['key_files'], list):
        result.warnings.append('key_files should be an array')


def _check_task_list(data: Dict, result: ValidationResult):
    tasks = data.get('tasks')
    if tasks is not None and not isinstance(tasks, list):
        result.fail('tasks must be an array')
    elif isinstance(tasks, list) and not tasks:
        result.fail('tasks must not be empty')
    if 'total_tasks' in data and not _is_number(data['total_tasks']):
        result.warnings.append('total_tasks should be a number')

    schema = PHASE_SCHEMAS['task_list']
    known = schema['task_required'] + schema['task_optional']
    seen = set()
    for index, task in enumerate(tasks if isinstance(tasks, list) else []):
        if not isinstance(task, dict):
            result.fail(f"Task at index {index} is not an object")
            continue
        for name in schema['task_required']:
            value = task.get(name)
            if value is None or (isinstance(value, str) and not value.strip()):
                result.fail(f"Task at index {index} missing required field: {name}")
        for name in task:
            if name not in known:
                result.warnings.append(
                    f"Task at index {index} has unexpected field: {name}")
        task_id = task.get('id')
        if task_id is not None:
            if str(task_id) in seen:
                result.fail(f"Duplicate task id: {task_id}")
            seen.add(str(task_id))


def _check_progress(data: Dict, result: ValidationResult):
    if 'progress_percent' not in data:
        return
    pct = data['progress_percent']
    if not _is_number(pct):
        result.warnings.append('progress_percent should be a number')
    elif pct < 0 or pct > 100:
        result.warnings.append('progress_percent should be between 0 and 100')


def _check_completion(data: Dict, result: ValidationResult):
    status = data.get('status')
    if status and status not in COMPLETION_STATUSES:
        result.warnings.append(f"Unknown completion status: {status}")
    if 'output_files' in data and not isinstance(data['output_files'], list):
        result.warnings.append('output_files should be an array')


def _check_aggregation(data: Dict, result: ValidationResult):
    for name in ('conflicts', 'output_files'):
        if name in data and not isinstance(data[name], list):
            result.warnings.append(f"{name} should be an array")


PHASE_VALIDATORS: Dict[str, Callable[[Dict, ValidationResult], None]] = {
    'analysis': _check_analysis,
    'task_list': _check_task_list,
    'progress': _check_progress,
    'completion': _check_completion,
    'aggregation': _check_aggregation,
}


class ResponseParser:
    """Locate, decode and validate response envelopes."""

    def __init__(self, start_marker: str = START_MARKER,
                 end_marker: str = END_MARKER):
        self.start_marker = start_marker
        self.end_marker = end_marker

    def _decode_block(self, content: str, **extra) -> ParsedResponse:
        payload = extract_json(content)
        if payload is None:
            return ParsedResponse(found=True, error='Failed to parse JSON content',
                                  raw=content, **extra)
        if not payload.get('phase'):
            return ParsedResponse(found=True, error='Missing required field: phase',
                                  raw=content, **extra)
        if not isinstance(payload.get('data'), dict):
            return ParsedResponse(found=True,
                                  error='Missing or invalid required field: data',
                                  raw=content, **extra)
        return ParsedResponse(found=True, phase=str(payload['phase']),
                              data=payload['data'], raw=content, **extra)

    def parse(self, text: str) -> ParsedResponse:
        """Parse the first envelope in ``text``."""
        if not text or not isinstance(text, str):
            return ParsedResponse(found=False, raw=text)

        start = text.find(self.start_marker)
        if start == -1:
            return ParsedResponse(found=False, raw=text)
        end = text.find(self.end_marker, start + len(self.start_marker))
        if end == -1:
            return ParsedResponse(found=False, error='Missing end delimiter',
                                  raw=text)

        content = text[start + len(self.start_marker):end].strip()
        return self._decode_block(
            content,
            before_text=text[:start].strip(),
            after_text=text[end + len(self.end_marker):].strip(),
        )

    def parse_multiple(self, text: str) -> List[ParsedResponse]:
        """Return every envelope in ``text``, in document order.

        An opening marker with no closing marker yields one final
        not-found result and stops the scan.
        """
        if not text or not isinstance(text, str):
            return []

        results: List[ParsedResponse] = []
        cursor = 0
        while True:
            start = text.find(self.start_marker, cursor)
            if start == -1:
                break
            end = text.find(self.end_marker, start + len(self.start_marker))
            if end == -1:
                results.append(ParsedResponse(found=False,
                                              error='Missing end delimiter',
                                              raw=text[start:]))
                cursor = len(text)
                break
            content = text[start + len(self.start_marker):end].strip()
            before = text[cursor:start].strip()
            results.append(self._decode_block(content, before_text=before or None))
            cursor = end + len(self.end_marker)

        if results and cursor < len(text):
            after = text[cursor:].strip()
            if after:
                results[-1].after_text = after
        return results

    def validate_phase(self, phase: str, data: Dict) -> ValidationResult:
        """Check ``data`` against the schema for ``phase``.

        Missing required fields make the result invalid; unexpected fields
        and type mismatches are warnings only.
        """
        result = ValidationResult()
        schema = PHASE_SCHEMAS.get(phase)
        if schema is None:
            result.warnings.append(f"Unknown phase: {phase}")
            return result
        if not isinstance(data, dict):
            result.fail('data must be an object')
            return result

        for name in schema['required']:
            if data.get(name) is None:
                result.fail(f"Missing required field: {name}")
        known = schema['required'] + schema.get('optional', [])
        for name in data:
            if name not in known:
                result.warnings.append(f"Unexpected field: {name}")

        check = PHASE_VALIDATORS.get(phase)
        if check:
            check(data, result)
        return result

    def detect_fallback(self, text: str) -> FallbackDetection:
        """Guess a phase from keywords. A low-confidence hint, never data."""
        if not text or not isinstance(text, str):
            return FallbackDetection(detected=False)

        best_phase, best_count = None, 0
        for phase, patterns in FALLBACK_PATTERNS.items():
            count = sum(1 for p in patterns if p.search(text))
            if count > best_count:
                best_phase, best_count = phase, count

        if not best_count:
            return FallbackDetection(detected=False)

        total = len(FALLBACK_PATTERNS[best_phase])
        confidence = min(0.9, (best_count / total) * 0.9 + 0.1)
        return FallbackDetection(detected=True, probable_phase=best_phase,
                                 confidence=round(confidence, 2))
