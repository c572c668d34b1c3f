"""Workflow templates: loading, inheritance and prompt substitution.

System templates ship with the package and are read-only. Custom
templates live in a separate directory and support full CRUD. A template
may ``extends`` one parent; ``resolve`` flattens the chain.
"""

import copy
import json
import os
import re
from typing import Any, Dict, List, Optional, Set

import jsonschema

from session_orchestrator.config import (
    ORCH_CUSTOM_TEMPLATES_DIR, ORCH_TEMPLATES_DIR,
)
from session_orchestrator.errors import (
    CircularInheritanceError, NotFoundError, TemplateError,
)
from session_orchestrator.events import (
    EventEmitter, TEMPLATE_CREATED, TEMPLATE_DELETED, TEMPLATE_UPDATED,
)
from session_orchestrator.models import ValidationResult

IDENTITY_FIELDS = ('id', 'name', 'description')
PLACEHOLDER = re.compile(r'\{([A-Z_][A-Z0-9_]*)\}')
DEFAULT_PARENT = '_default'

DEFAULT_SCHEMA = {
    '$schema': 'http://json-schema.org/draft-07/schema#',
    'type': 'object',
    'required': ['id', 'name'],
    'properties': {
        'id': {'type': 'string', 'minLength': 1},
        'name': {'type': 'string', 'minLength': 1},
        'description': {'type': 'string'},
        'icon': {'type': 'string'},
        'version': {'type': 'string'},
        'author': {'type': 'string'},
        'tags': {'type': 'array', 'items': {'type': 'string'}},
        'extends': {'type': 'string'},
        'config': {'type': 'object'},
        'phases': {'type': 'object'},
        'prompts': {'type': 'object'},
        'variables': {'type': 'object'},
    },
    'additionalProperties': True,
}


def deep_merge(parent: Any, child: Any) -> Any:
    """Merge ``child`` over ``parent``.

    Dicts merge recursively, lists and scalars from the child replace the
    parent's. Keys starting with ``_`` in the child are skipped.
    """
    if child is None:
        return copy.deepcopy(parent)
    if not isinstance(parent, dict) or not isinstance(child, dict):
        return copy.deepcopy(child)

    merged = copy.deepcopy(parent)
    for key, value in child.items():
        if key.startswith('_'):
            continue
        if key in merged:
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _stringify(value: Any) -> str:
    if value is None:
        return ''
    if isinstance(value, bool):
        return 'yes' if value else 'no'
    if isinstance(value, (list, tuple)):
        return ', '.join(str(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value)
    return str(value)


def substitute_variables(text: Optional[str], variables: Dict[str, Any]) -> Optional[str]:
    """Replace ``{UPPER_SNAKE}`` placeholders; unknown ones are left as-is."""
    if not text or not isinstance(text, str):
        return text

    def replace(match):
        name = match.group(1)
        if name in variables:
            return _stringify(variables[name])
        return match.group(0)

    return PLACEHOLDER.sub(replace, text)


class TemplateManager:
    """In-memory index of system and custom templates."""

    def __init__(self, templates_dir: str = ORCH_TEMPLATES_DIR,
                 custom_dir: str = ORCH_CUSTOM_TEMPLATES_DIR,
                 debug: bool = False):
        self.templates_dir = templates_dir
        self.custom_dir = custom_dir
        self.debug = debug
        self.events = EventEmitter("TEMPLATES")
        self._templates: Dict[str, Dict] = {}
        self._system_ids: Set[str] = set()
        self._paths: Dict[str, str] = {}
        self._resolved: Dict[str, Dict] = {}
        self._validator = None
        self._loaded = False

    def _dbg(self, msg: str):
        if self.debug:
            print(f"[TEMPLATES] {msg}")

    # -- loading --------------------------------------------------------------

    def load(self):
        """(Re)load the schema and every template from disk."""
        self._validator = jsonschema.Draft7Validator(self._load_schema())
        self._templates.clear()
        self._system_ids.clear()
        self._paths.clear()
        self._resolved.clear()
        self._load_dir(self.templates_dir, system=True)
        self._load_dir(self.custom_dir, system=False)
        self._loaded = True
        self._dbg(f"Loaded {len(self._templates)} templates")
        return self

    def _ensure_loaded(self):
        if not self._loaded:
            self.load()

    def _load_schema(self) -> Dict:
        path = os.path.join(self.templates_dir, 'schema.json')
        if not os.path.exists(path):
            print("[TEMPLATES] Warning: schema.json not found, using "
                  "permissive validation")
            return DEFAULT_SCHEMA
        with open(path, 'r') as f:
            schema = json.load(f)
        jsonschema.Draft7Validator.check_schema(schema)
        return schema

    def _load_dir(self, directory: str, system: bool):
        if not os.path.isdir(directory):
            return
        for name in sorted(os.listdir(directory)):
            if not name.endswith('.json') or name == 'schema.json':
                continue
            path = os.path.join(directory, name)
            try:
                with open(path, 'r') as f:
                    template = json.load(f)
            except (OSError, ValueError) as exc:
                print(f"[TEMPLATES] Warning: failed to load {path}: {exc}")
                continue
            template_id = template.get('id') or name[:-len('.json')]
            template['id'] = template_id
            if not system and template_id in self._system_ids:
                print(f"[TEMPLATES] Warning: custom template {path} shadows "
                      f"system template '{template_id}', skipped")
                continue
            self._templates[template_id] = template
            self._paths[template_id] = path
            if system:
                self._system_ids.add(template_id)

    # -- queries --------------------------------------------------------------

    def is_system_template(self, template_id: str) -> bool:
        return template_id in self._system_ids

    def get_raw(self, template_id: str) -> Dict:
        self._ensure_loaded()
        if template_id not in self._templates:
            raise NotFoundError(f"Template '{template_id}' not found")
        return copy.deepcopy(self._templates[template_id])

    def list_templates(self) -> List[Dict]:
        """Metadata for every known template, for listings."""
        self._ensure_loaded()
        listing = []
        for template_id, template in self._templates.items():
            listing.append({
                'id': template_id,
                'name': template.get('name') or template_id,
                'description': template.get('description', ''),
                'icon': template.get('icon'),
                'author': template.get('author', 'unknown'),
                'version': template.get('version', '1.0.0'),
                'tags': template.get('tags', []),
                'is_system': self.is_system_template(template_id),
                'is_internal': template_id.startswith('_'),
                'extends': template.get('extends'),
            })
        return listing

    def dependents(self, template_id: str) -> List[str]:
        return [tid for tid, t in self._templates.items()
                if t.get('extends') == template_id]

    # -- inheritance ----------------------------------------------------------

    def resolve(self, template_id: str) -> Dict:
        """Return ``template_id`` with its ``extends`` chain flattened."""
        self._ensure_loaded()
        if template_id in self._resolved:
            return copy.deepcopy(self._resolved[template_id])
        if template_id not in self._templates:
            raise NotFoundError(f"Template '{template_id}' not found")

        resolved = self._resolve(self._templates[template_id], [])
        self._resolved[template_id] = resolved
        return copy.deepcopy(resolved)

    def _resolve(self, template: Dict, chain: List[str]) -> Dict:
        template_id = template['id']
        if template_id in chain:
            raise CircularInheritanceError(chain + [template_id])

        parent_id = template.get('extends')
        if not parent_id:
            return {k: copy.deepcopy(v) for k, v in template.items()
                    if not k.startswith('_')}

        parent = self._templates.get(parent_id)
        if parent is None:
            raise TemplateError(
                f"Parent template '{parent_id}' not found for '{template_id}'")

        merged = deep_merge(self._resolve(parent, chain + [template_id]),
                            template)
        for name in IDENTITY_FIELDS:
            if name in template:
                merged[name] = template[name]
            else:
                merged.pop(name, None)
        merged['id'] = template_id
        return merged

    def _check_chain(self, template: Dict):
        """Fail if adding ``template`` to the index would create a cycle."""
        template_id = template.get('id')
        chain = [template_id]
        parent_id = template.get('extends')
        while parent_id:
            if parent_id in chain:
                raise CircularInheritanceError(chain + [parent_id])
            chain.append(parent_id)
            parent = self._templates.get(parent_id)
            parent_id = parent.get('extends') if parent else None

    def _invalidate(self, template_id: str):
        self._resolved.pop(template_id, None)
        for dependent in self.dependents(template_id):
            self._invalidate(dependent)

    # -- validation -----------------------------------------------------------

    def validate_template(self, template: Dict) -> ValidationResult:
        self._ensure_loaded()
        result = ValidationResult()
        inherits = bool(template.get('extends'))

        for error in sorted(self._validator.iter_errors(template), key=str):
            # Inheriting templates pick their prompts up from the parent.
            if inherits and error.validator == 'required' and \
                    ("'prompts'" in error.message or
                     list(error.absolute_path)[:1] == ['prompts']):
                continue
            where = '/'.join(str(p) for p in error.absolute_path) or 'root'
            result.fail(f"{where}: {error.message}")

        parent_id = template.get('extends')
        if parent_id and parent_id not in self._templates:
            result.fail(f"Extends non-existent template: {parent_id}")
        if not inherits and not template.get('prompts'):
            result.fail('Base templates must have prompts defined')
        if template.get('prompts') and not inherits and \
                'responseFormat' not in template['prompts']:
            result.warnings.append('No responseFormat defined in prompts')
        return result

    # -- mutation -------------------------------------------------------------

    def generate_template_id(self, name: str) -> str:
        base = re.sub(r'[^a-z0-9]+', '-', name.lower()).strip('-')[:50]
        base = base or 'template'
        candidate, counter = base, 1
        while candidate in self._templates:
            candidate = f"{base}-{counter}"
            counter += 1
        return candidate

    def _write(self, template: Dict) -> str:
        os.makedirs(self.custom_dir, exist_ok=True)
        path = os.path.join(self.custom_dir, f"{template['id']}.json")
        with open(path, 'w') as f:
            json.dump(template, f, indent=2)
        return path

    def create_template(self, data: Dict) -> Dict:
        self._ensure_loaded()
        template = copy.deepcopy(data)
        if not template.get('id'):
            template['id'] = self.generate_template_id(
                template.get('name') or 'custom-template')
        template_id = template['id']

        if self.is_system_template(template_id):
            raise TemplateError(
                f"Cannot create template with system ID '{template_id}'")
        if template_id in self._templates:
            raise TemplateError(f"Template with ID '{template_id}' already exists")

        template.setdefault('author', 'user')
        if not template.get('extends') and template_id != DEFAULT_PARENT:
            template['extends'] = DEFAULT_PARENT

        validation = self.validate_template(template)
        if not validation.valid:
            raise TemplateError(f"Invalid template: {', '.join(validation.errors)}")
        self._check_chain(template)

        self._paths[template_id] = self._write(template)
        self._templates[template_id] = template
        self._invalidate(template_id)
        self.events.emit(TEMPLATE_CREATED, {'id': template_id,
                                            'name': template.get('name')})
        print(f"[TEMPLATES] Created template '{template_id}'")
        return copy.deepcopy(template)

    def update_template(self, template_id: str, changes: Dict) -> Dict:
        self._ensure_loaded()
        if template_id not in self._templates:
            raise NotFoundError(f"Template '{template_id}' not found")
        if self.is_system_template(template_id):
            raise TemplateError(f"Cannot update system template '{template_id}'")

        updated = copy.deepcopy(self._templates[template_id])
        updated.update(copy.deepcopy(changes))
        updated['id'] = template_id

        validation = self.validate_template(updated)
        if not validation.valid:
            raise TemplateError(f"Invalid template: {', '.join(validation.errors)}")
        self._check_chain(updated)

        self._paths[template_id] = self._write(updated)
        self._templates[template_id] = updated
        self._invalidate(template_id)
        self.events.emit(TEMPLATE_UPDATED, {'id': template_id,
                                            'name': updated.get('name')})
        return copy.deepcopy(updated)

    def delete_template(self, template_id: str):
        self._ensure_loaded()
        if template_id not in self._templates:
            raise NotFoundError(f"Template '{template_id}' not found")
        if self.is_system_template(template_id):
            raise TemplateError(f"Cannot delete system template '{template_id}'")
        dependents = self.dependents(template_id)
        if dependents:
            raise TemplateError(f"Cannot delete template '{template_id}': "
                                f"used by {', '.join(dependents)}")

        path = self._paths.get(template_id)
        if path and os.path.exists(path):
            os.remove(path)
        self._paths.pop(template_id, None)
        del self._templates[template_id]
        self._resolved.pop(template_id, None)
        self.events.emit(TEMPLATE_DELETED, {'id': template_id})

    def duplicate_template(self, template_id: str, new_name: str) -> Dict:
        """Create a custom template that extends ``template_id``."""
        source = self.resolve(template_id)
        duplicate = {k: v for k, v in source.items() if k not in IDENTITY_FIELDS}
        duplicate.update({
            'id': self.generate_template_id(new_name),
            'name': new_name,
            'author': 'user',
            'extends': template_id,
        })
        if source.get('description'):
            duplicate['description'] = source['description']
        return self.create_template(duplicate)

    # -- prompts --------------------------------------------------------------

    def generate_prompt(self, template: Dict, prompt_key: str,
                        variables: Dict[str, Any]) -> Dict[str, str]:
        """Return the substituted ``{'system', 'user'}`` pair for a prompt."""
        prompts = template.get('prompts') or {}
        config = prompts.get(prompt_key)
        if not config:
            raise TemplateError(f"Template '{template.get('id')}' has no "
                                f"'{prompt_key}' prompt")
        return {
            'system': substitute_variables(config.get('system') or '', variables),
            'user': substitute_variables(config.get('user') or '', variables),
        }

    @staticmethod
    def combine_prompt(pair: Dict[str, str]) -> str:
        if pair.get('system') and pair.get('user'):
            return f"{pair['system']}\n\n---\n\n{pair['user']}"
        return pair.get('system') or pair.get('user') or ''
