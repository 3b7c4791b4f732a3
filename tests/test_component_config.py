"""Tests for component configuration validation."""

import pytest

from conftest import make_template
from cms_backend.errors import NotFoundError
from cms_backend.models import ComponentTemplate
from cms_backend.repositories import MemoryRepository
from cms_backend.services.component_config import (
    ComponentConfigValidator,
    FieldKind,
    is_valid_image_url,
    is_valid_url,
    parse_schema,
    sanitize_html,
)


@pytest.fixture
def validator():
    return ComponentConfigValidator()


class TestHelpers:
    def test_sanitize_html(self):
        assert sanitize_html('<b onclick="steal()">hi</b>') == "<b>hi</b>"
        assert sanitize_html("<script>alert(1)</script>ok") == "ok"
        assert sanitize_html("javascript:alert(1)") == "alert(1)"

    def test_sanitize_html_structure(self):
        assert sanitize_html('<a href="javascript:steal()" title="x">go</a>') == '<a title="x">go</a>'
        assert sanitize_html('<img src="/logo.png" onerror="steal()"/>') == '<img src="/logo.png"/>'
        assert sanitize_html("<p>Hi</p><style>p { display: none }</style>") == "<p>Hi</p>"
        assert sanitize_html("<SCRIPT>alert(1)</SCRIPT><i>ok</i>") == "<i>ok</i>"
        assert sanitize_html("Fish & Chips 3 < 5") == "Fish & Chips 3 < 5"

    def test_urls(self):
        assert is_valid_url("/about")
        assert is_valid_url("#top")
        assert is_valid_url("https://example.com/x")
        assert not is_valid_url("ftp://example.com")
        assert not is_valid_url("not a url")

    def test_image_urls(self):
        assert is_valid_image_url("https://cdn.example.com/logo.png")
        assert is_valid_image_url("data:image/png;base64,AAAA")
        assert is_valid_image_url("/api/files/12")
        assert not is_valid_image_url("https://example.com/readme")


class TestBuiltInSchemas:
    def test_valid_text(self, validator):
        result = validator.validate("text", {"text": "Hello", "textAlign": "center", "textColor": "#112233"})
        assert result.is_valid
        assert result.sanitized == {"text": "Hello", "textAlign": "center", "textColor": "#112233"}

    def test_type_lookup_case_insensitive(self, validator):
        assert validator.validate("Text", {"text": "Hello"}).is_valid

    def test_missing_required(self, validator):
        result = validator.validate("image", {"alt": "logo"})
        assert not result.is_valid
        assert "Required property 'src' is missing" in result.errors

    def test_enum_and_pattern(self, validator):
        result = validator.validate("button", {"text": "Go", "size": "huge", "textColor": "red"})
        assert not result.is_valid
        assert any("size" in e for e in result.errors)
        assert any("textColor" in e for e in result.errors)

    def test_boolean_kind(self, validator):
        assert validator.validate("container", {"centered": True}).is_valid
        assert not validator.validate("container", {"centered": "yes"}).is_valid

    def test_unknown_keys_dropped(self, validator):
        result = validator.validate("container", {"padding": "8px", "onload": "x()"})
        assert result.sanitized == {"padding": "8px"}

    def test_business_rules(self, validator):
        assert not validator.validate("button", {"text": "Go", "href": "nowhere"}).is_valid
        assert validator.validate("button", {"text": "Go", "href": "https://example.com"}).is_valid
        assert not validator.validate("image", {"src": "https://example.com/readme"}).is_valid

    def test_unknown_type_accepted_and_sanitized(self, validator):
        result = validator.validate("carousel", {"caption": "<script>x</script>Hi", "speed": 3})
        assert result.is_valid
        assert result.sanitized == {"caption": "Hi", "speed": 3}

    def test_default_configs(self, validator):
        defaults = validator.get_default_config("button")
        assert defaults["text"] == "Click Me"
        defaults["text"] = "changed"
        assert validator.get_default_config("button")["text"] == "Click Me"
        assert validator.get_default_config("carousel") == {}


class TestTemplateSchemas:
    def test_parse_schema(self):
        schema = parse_schema("card", {
            "required": ["title"],
            "properties": {
                "title": {"type": "string", "minLength": 2},
                "layout": {"type": "string", "enum": ["grid", "list"]},
                "accent": {"type": "string", "pattern": "^#[0-9a-f]{6}$"},
                "columns": {"type": "integer"},
                "bordered": {"type": "boolean"},
                "items": {"type": "array"},
            },
        })
        kinds = {name: spec.kind for name, spec in schema.fields.items()}
        assert kinds == {
            "title": FieldKind.STRING,
            "layout": FieldKind.ENUM,
            "accent": FieldKind.PATTERN,
            "columns": FieldKind.NUMBER,
            "bordered": FieldKind.BOOLEAN,
        }
        assert schema.fields["title"].required is True

    @pytest.mark.asyncio
    async def test_validate_for_template(self):
        templates = MemoryRepository(ComponentTemplate)
        template = await templates.add(make_template(
            type="card",
            config_schema={
                "required": ["title"],
                "properties": {"title": {"type": "string", "maxLength": 5}, "columns": {"type": "number"}},
            },
        ))
        validator = ComponentConfigValidator(templates)

        ok = await validator.validate_for_template(template.id, {"title": "Hi", "columns": 3})
        assert ok.is_valid
        bad = await validator.validate_for_template(template.id, {"title": "Too long", "columns": True})
        assert not bad.is_valid
        assert len(bad.errors) == 2

    @pytest.mark.asyncio
    async def test_template_without_schema_uses_built_in(self):
        templates = MemoryRepository(ComponentTemplate)
        template = await templates.add(make_template(type="button", config_schema={}))
        validator = ComponentConfigValidator(templates)
        result = await validator.validate_for_template(template.id, {"href": "/x"})
        assert not result.is_valid

    @pytest.mark.asyncio
    async def test_missing_template(self):
        with pytest.raises(NotFoundError):
            await ComponentConfigValidator(MemoryRepository(ComponentTemplate)).validate_for_template(3, {})
