import pytest

from herald.schemas import TemplateCreate, TemplateUpdate
from herald.services.template_engine import DEFAULT_TEMPLATES
from herald.utils.errors import TemplateExists, TemplateNotFound, TemplateRenderError, TemplateSyntaxError


@pytest.fixture
async def alert_template(templates):
    return await templates.add(TemplateCreate(
        name="alert",
        title="Alert: {{alert_type}}",
        body="{% if severity == 'high' %}PAGE ON-CALL: {% endif %}{{ message | default('n/a') }} ({{ severity }})",
        variables={"alert_type": "CPU", "severity": "medium"},
    ))


async def test_caller_variables_override_defaults(templates, alert_template):
    title, body = await templates.render("alert", {"alert_type": "Disk"})
    assert title == "Alert: Disk"
    assert body == "n/a (medium)"


async def test_defaults_apply_when_not_overridden(templates, alert_template):
    title, _ = await templates.render("alert")
    assert title == "Alert: CPU"


async def test_conditionals_and_filters(templates, alert_template):
    _, body = await templates.render("alert", {"severity": "high", "message": "disk full"})
    assert body == "PAGE ON-CALL: disk full (high)"

    await templates.add(TemplateCreate(name="shout", title="{{ name | upper }}", body="{{ timestamp | format_time('%Y/%m/%d') }}"))
    title, body = await templates.render("shout", {"name": "herald"})
    assert title == "HERALD"
    assert body == "2024/01/01"


async def test_system_variables(templates):
    await templates.add(TemplateCreate(name="sys", title="{{ date }} {{ time }}", body="{{ weekday }} {{ timestamp }} {{ unix_time }}"))
    title, body = await templates.render("sys")
    assert title == "2024-01-01 10:00:00"
    assert body == "Monday 2024-01-01T10:00:00+00:00 1704103200"


async def test_system_variables_win_over_caller(templates):
    await templates.add(TemplateCreate(name="ts", title="{{ date }}", body=""))
    title, _ = await templates.render("ts", {"date": "yesterday"})
    assert title == "2024-01-01"


async def test_add_rejects_syntax_error(templates):
    with pytest.raises(TemplateSyntaxError):
        await templates.add(TemplateCreate(name="broken", title="{{ unclosed", body=""))
    with pytest.raises(TemplateNotFound):
        await templates.get("broken")


async def test_duplicate_name(templates, alert_template):
    with pytest.raises(TemplateExists):
        await templates.add(TemplateCreate(name="alert", title="again"))


async def test_render_unknown_template(templates):
    with pytest.raises(TemplateNotFound):
        await templates.render("missing", {})


async def test_sandbox_blocks_unsafe_attributes(templates):
    await templates.add(TemplateCreate(name="escape", title="{{ ''.__class__.__mro__ }}", body=""))
    with pytest.raises(TemplateRenderError):
        await templates.render("escape")


async def test_update_invalidates_cache(templates, alert_template, clock):
    assert (await templates.render("alert"))[0] == "Alert: CPU"

    clock.advance(seconds=1)
    await templates.update("alert", TemplateUpdate(title="Warning: {{ alert_type }}"))
    assert (await templates.render("alert"))[0] == "Warning: CPU"


async def test_update_rejects_syntax_error(templates, alert_template):
    with pytest.raises(TemplateSyntaxError):
        await templates.update("alert", TemplateUpdate(body="{% if %}"))
    assert (await templates.get("alert")).title == "Alert: {{alert_type}}"


async def test_delete(templates, alert_template):
    await templates.render("alert")
    await templates.delete("alert")
    with pytest.raises(TemplateNotFound):
        await templates.render("alert")
    with pytest.raises(TemplateNotFound):
        await templates.delete("alert")


async def test_cache_is_bounded(templates):
    for index in range(6):
        await templates.add(TemplateCreate(name=f"t{index}", title=f"title {index}"))
        await templates.render(f"t{index}")
    assert len(templates._cache) == templates.config.cache_size


async def test_create_default_templates_is_idempotent(templates):
    assert await templates.create_default_templates() == len(DEFAULT_TEMPLATES)
    assert await templates.create_default_templates() == 0

    names = [template.name for template in await templates.list()]
    assert names == sorted(template.name for template in DEFAULT_TEMPLATES)

    title, body = await templates.render("system-alert", {"message": "load high", "system": "db1"})
    assert title == "🚨 System Alert: System Alert"
    assert "• System: db1" in body
    assert "• Message: load high" in body


async def test_render_is_repeatable(templates, alert_template):
    first = await templates.render("alert", {"severity": "high", "message": "x"})
    second = await templates.render("alert", {"severity": "high", "message": "x"})
    assert first == second


async def test_runtime_error_becomes_render_error(templates):
    await templates.add(TemplateCreate(name="counter", title="{{ count + 1 }}", body=""))
    with pytest.raises(TemplateRenderError, match="TypeError"):
        await templates.render("counter", {"count": "5"})
    assert (await templates.render("counter", {"count": 5}))[0] == "6"
