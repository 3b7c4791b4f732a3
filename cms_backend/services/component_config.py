"""Component configuration validation.

Schemas are tagged variants: every field has one `FieldKind` and only the
constraints that kind understands. Template-supplied JSON schemas are parsed
into the same form, so one small interpreter validates both.
"""

import enum
import logging
import re
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from cms_backend.errors import NotFoundError
from cms_backend.models import ComponentTemplate
from cms_backend.repositories import Repository

logger = logging.getLogger(__name__)

HEX_COLOR = r"^#[0-9A-Fa-f]{6}$"
IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp", ".bmp")

_JS_URL_RE = re.compile(r"javascript\s*:", re.IGNORECASE)
_URL_ATTRS = {"href", "src", "action", "formaction", "xlink:href"}


class FieldKind(str, enum.Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ENUM = "enum"
    PATTERN = "pattern"


@dataclass(frozen=True)
class FieldSpec:
    kind: FieldKind
    required: bool = False
    min_length: int | None = None
    max_length: int | None = None
    choices: tuple[str, ...] = ()
    pattern: str | None = None


@dataclass
class ComponentSchema:
    component_type: str
    fields: dict[str, FieldSpec] = field(default_factory=dict)


@dataclass
class ValidationResult:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    sanitized: dict[str, Any] = field(default_factory=dict)


def _string(**kw) -> FieldSpec:
    return FieldSpec(FieldKind.STRING, **kw)


def _choice(*choices: str) -> FieldSpec:
    return FieldSpec(FieldKind.ENUM, choices=choices)


def _color() -> FieldSpec:
    return FieldSpec(FieldKind.PATTERN, pattern=HEX_COLOR)


BUILT_IN_SCHEMAS: dict[str, ComponentSchema] = {
    "text": ComponentSchema("Text", {
        "text": _string(required=True, min_length=1),
        "textColor": _color(),
        "fontSize": _string(),
        "fontWeight": _choice("normal", "bold", "lighter", "bolder"),
        "textAlign": _choice("left", "center", "right", "justify"),
        "backgroundColor": _color(),
        "margin": _string(),
        "padding": _string(),
    }),
    "image": ComponentSchema("Image", {
        "src": _string(required=True, min_length=1),
        "alt": _string(),
        "width": _string(),
        "height": _string(),
        "objectFit": _choice("cover", "contain", "fill", "scale-down"),
        "borderRadius": _string(),
        "margin": _string(),
        "padding": _string(),
    }),
    "button": ComponentSchema("Button", {
        "text": _string(required=True, min_length=1),
        "href": _string(),
        "target": _choice("_self", "_blank", "_parent", "_top"),
        "variant": _choice("primary", "secondary", "outline", "ghost"),
        "size": _choice("small", "medium", "large"),
        "backgroundColor": _color(),
        "textColor": _color(),
        "borderRadius": _string(),
        "margin": _string(),
        "padding": _string(),
    }),
    "container": ComponentSchema("Container", {
        "maxWidth": _string(),
        "centered": FieldSpec(FieldKind.BOOLEAN),
        "backgroundColor": _color(),
        "borderRadius": _string(),
        "border": _string(),
        "margin": _string(),
        "padding": _string(),
    }),
}

DEFAULT_CONFIGS: dict[str, dict[str, Any]] = {
    "text": {
        "text": "Enter your text here...", "textColor": "#000000", "fontSize": "16px",
        "fontWeight": "normal", "textAlign": "left", "margin": "0", "padding": "16px",
    },
    "image": {"src": "", "alt": "Image", "width": "100%", "height": "auto", "objectFit": "cover"},
    "button": {
        "text": "Click Me", "href": "", "target": "_self", "variant": "primary", "size": "medium",
        "backgroundColor": "#007bff", "textColor": "#ffffff", "borderRadius": "4px", "padding": "12px 24px",
    },
    "container": {"maxWidth": "1200px", "centered": True, "margin": "0 auto", "padding": "20px"},
}


def parse_schema(component_type: str, raw: dict) -> ComponentSchema:
    """Parse a JSON-schema-style dict ({required, properties}) into variant form.

    Object and array properties have no variant and are left out.
    """
    required = set(raw.get("required") or [])
    fields: dict[str, FieldSpec] = {}
    for name, prop in (raw.get("properties") or {}).items():
        if not isinstance(prop, dict):
            continue
        kind = prop.get("type", "string")
        if prop.get("enum"):
            spec = FieldSpec(FieldKind.ENUM, required=name in required, choices=tuple(str(c) for c in prop["enum"]))
        elif kind == "string" and prop.get("pattern"):
            spec = FieldSpec(FieldKind.PATTERN, required=name in required, pattern=prop["pattern"])
        elif kind == "string":
            spec = FieldSpec(
                FieldKind.STRING,
                required=name in required,
                min_length=prop.get("minLength"),
                max_length=prop.get("maxLength"),
            )
        elif kind in ("number", "integer"):
            spec = FieldSpec(FieldKind.NUMBER, required=name in required)
        elif kind == "boolean":
            spec = FieldSpec(FieldKind.BOOLEAN, required=name in required)
        else:
            logger.debug("Schema property skipped | type=%s | property=%s | kind=%s", component_type, name, kind)
            continue
        fields[name] = spec
    return ComponentSchema(component_type, fields)


def sanitize_html(value: str) -> str:
    """Drop script/style elements, event-handler attributes and javascript: URLs."""
    if "<" not in value:
        return _JS_URL_RE.sub("", value)
    soup = BeautifulSoup(value, "html.parser")
    if soup.find() is None:
        return _JS_URL_RE.sub("", value)
    for node in soup(["script", "style"]):
        node.decompose()
    for tag in soup.find_all(True):
        for attr in list(tag.attrs):
            if attr.lower().startswith("on"):
                del tag[attr]
            elif attr.lower() in _URL_ATTRS and _JS_URL_RE.search(str(tag[attr])):
                del tag[attr]
    return _JS_URL_RE.sub("", str(soup))


def is_valid_url(url: str) -> bool:
    if url.startswith(("/", "#")):
        return True
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def is_valid_image_url(url: str) -> bool:
    if url.startswith("data:image/"):
        return True
    if not is_valid_url(url):
        return False
    lowered = url.lower()
    return any(ext in lowered for ext in IMAGE_EXTENSIONS) or "image" in lowered or url.startswith("/api/files/")


def check_field(name: str, spec: FieldSpec, value: Any) -> list[str]:
    if spec.kind == FieldKind.BOOLEAN:
        if not isinstance(value, bool):
            return [f"Property '{name}' must be of type boolean"]
    elif spec.kind == FieldKind.NUMBER:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return [f"Property '{name}' must be of type number"]
    elif spec.kind == FieldKind.ENUM:
        if str(value) not in spec.choices:
            return [f"Property '{name}' must be one of: {', '.join(spec.choices)}"]
    elif spec.kind == FieldKind.PATTERN:
        if not isinstance(value, str):
            return [f"Property '{name}' must be of type string"]
        if not re.match(spec.pattern or "", value):
            return [f"Property '{name}' does not match required pattern"]
    else:
        if not isinstance(value, str):
            return [f"Property '{name}' must be of type string"]
        if spec.min_length is not None and len(value) < spec.min_length:
            return [f"Property '{name}' must be at least {spec.min_length} characters"]
        if spec.max_length is not None and len(value) > spec.max_length:
            return [f"Property '{name}' must be no more than {spec.max_length} characters"]
    return []


class ComponentConfigValidator:

    def __init__(self, templates: Repository[ComponentTemplate] | None = None):
        self.templates = templates

    def schema_for(self, component_type: str) -> ComponentSchema | None:
        return BUILT_IN_SCHEMAS.get(component_type.lower())

    def get_default_config(self, component_type: str) -> dict[str, Any]:
        return dict(DEFAULT_CONFIGS.get(component_type.lower(), {}))

    def validate(
        self,
        component_type: str,
        config: dict[str, Any],
        schema: ComponentSchema | None = None,
    ) -> ValidationResult:
        schema = schema or self.schema_for(component_type)
        if schema is None:
            # No schema: accept as-is, strings still sanitized
            return ValidationResult(True, [], {
                k: sanitize_html(v) if isinstance(v, str) else v for k, v in config.items()
            })

        errors: list[str] = []
        sanitized: dict[str, Any] = {}
        for name, spec in schema.fields.items():
            if name not in config or config[name] is None:
                if spec.required:
                    errors.append(f"Required property '{name}' is missing")
                continue
            value = config[name]
            field_errors = check_field(name, spec, value)
            if field_errors:
                errors.extend(field_errors)
                continue
            sanitized[name] = sanitize_html(value) if spec.kind == FieldKind.STRING else value

        errors.extend(self._business_rules(schema.component_type, sanitized))
        return ValidationResult(not errors, errors, sanitized)

    @staticmethod
    def _business_rules(component_type: str, config: dict[str, Any]) -> list[str]:
        kind = component_type.lower()
        if kind == "button" and config.get("href") and not is_valid_url(config["href"]):
            return ["Button href must be a valid URL or relative path"]
        if kind == "image" and config.get("src") and not is_valid_image_url(config["src"]):
            return ["Image src must be a valid image URL"]
        return []

    async def validate_for_template(self, template_id: int, config: dict[str, Any]) -> ValidationResult:
        """Validate against a template's own schema, falling back to its type's built-in one."""
        if self.templates is None:
            raise NotFoundError("ComponentTemplate", template_id)
        template = await self.templates.get_by_id(template_id)
        if template is None:
            raise NotFoundError("ComponentTemplate", template_id)
        schema = None
        if template.config_schema:
            schema = parse_schema(template.type, template.config_schema)
        return self.validate(template.type, config, schema)
