"""
Notification template engine.

Templates are stored in notification_templates and rendered with a
sandboxed Jinja2 environment:

    title: "Alert: {{ alert_type }}"
    body:  "{% if severity == 'high' %}PAGE ON-CALL{% endif %} {{ message | default('n/a') | upper }}"

Template defaults are merged with caller variables (caller wins) and the
system variables (timestamp, date, time, ...) are always available.
"""
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from jinja2 import Template, TemplateError as JinjaTemplateError, TemplateSyntaxError as JinjaSyntaxError
from jinja2.sandbox import SandboxedEnvironment
from loguru import logger
from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from herald.config import TemplatesConfig
from herald.database import session_scope
from herald.models import NotificationTemplate
from herald.schemas import TemplateCreate, TemplateUpdate
from herald.utils.clock import utcnow, isoformat_utc, to_naive_utc
from herald.utils.errors import (
    TemplateExists,
    TemplateNotFound,
    TemplateRenderError,
    TemplateSyntaxError,
)

DEFAULT_TEMPLATES = [
    TemplateCreate(
        name="system-alert",
        title="🚨 System Alert: {{ alert_type | default('Unknown') }}",
        body=(
            "Alert Details:\n"
            "• System: {{ system | default('Unknown') }}\n"
            "• Severity: {{ severity | default('Medium') }}\n"
            "• Message: {{ message }}\n"
            "• Timestamp: {{ timestamp }}"
        ),
        variables={"severity": "Medium", "alert_type": "System Alert"},
        description="Template for system alerts and notifications",
    ),
    TemplateCreate(
        name="deployment-status",
        title="🚀 Deployment {{ status | default('Update') }}",
        body=(
            "Deployment Information:\n"
            "• Application: {{ app_name }}\n"
            "• Version: {{ version }}\n"
            "• Environment: {{ environment | default('production') }}\n"
            "• Status: {{ status }}\n"
            "• Time: {{ timestamp }}"
        ),
        variables={"environment": "production", "status": "completed"},
        description="Template for deployment status notifications",
    ),
    TemplateCreate(
        name="monitoring-report",
        title="📊 {{ report_type | default('Monitoring') }} Report",
        body=(
            "Report Summary:\n"
            "• Period: {{ period | default('Last 24 hours') }}\n"
            "• Metrics: {{ metrics }}\n"
            "• Status: {{ overall_status | default('Normal') }}\n"
            "• Details: {{ details }}\n"
            "• Generated: {{ timestamp }}"
        ),
        variables={"period": "Last 24 hours", "overall_status": "Normal"},
        description="Template for monitoring and health reports",
    ),
    TemplateCreate(
        name="backup-status",
        title="💾 Backup {{ status | default('Completed') }}",
        body=(
            "Backup Details:\n"
            "• Database: {{ database }}\n"
            "• Size: {{ backup_size | default('Unknown') }}\n"
            "• Duration: {{ duration | default('Unknown') }}\n"
            "• Status: {{ status }}\n"
            "• Location: {{ backup_location }}\n"
            "• Time: {{ timestamp }}"
        ),
        variables={"status": "completed", "backup_size": "Unknown", "duration": "Unknown"},
        description="Template for database backup status notifications",
    ),
]


def format_time(value: Any, fmt: str = "%Y-%m-%d %H:%M:%S") -> str:
    """Jinja filter: strftime in UTC for datetimes and RFC3339 strings."""
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
    if isinstance(value, datetime):
        return to_naive_utc(value).strftime(fmt)
    return str(value)


def create_environment() -> SandboxedEnvironment:
    """Sandboxed environment shared by validation and rendering."""
    env = SandboxedEnvironment(autoescape=False, keep_trailing_newline=True)
    env.filters["format_time"] = format_time
    return env


def system_variables(now: datetime) -> Dict[str, Any]:
    """Variables injected into every render (now is naive UTC)."""
    return {
        "timestamp": isoformat_utc(now),
        "unix_time": int(now.replace(tzinfo=timezone.utc).timestamp()),
        "date": now.strftime("%Y-%m-%d"),
        "time": now.strftime("%H:%M:%S"),
        "year": now.year,
        "month": now.month,
        "day": now.day,
        "hour": now.hour,
        "minute": now.minute,
        "second": now.second,
        "weekday": now.strftime("%A"),
        "timezone": "UTC",
    }


class TemplateEngine:
    """Stores, validates and renders notification templates."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        config: Optional[TemplatesConfig] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self._session_factory = session_factory
        self.config = config or TemplatesConfig()
        self._clock = clock
        self._env = create_environment()
        # (name, updated_at) -> compiled (title, body); oldest entry evicted first
        self._cache: "OrderedDict[Tuple[str, datetime], Tuple[Template, Template]]" = OrderedDict()

    def validate(self, title: str, body: str):
        """
        Parse title and body without rendering them.

        Raises:
            TemplateSyntaxError: either part does not parse
        """
        for part, source in (("title", title), ("body", body)):
            try:
                self._env.parse(source or "")
            except JinjaSyntaxError as e:
                raise TemplateSyntaxError(
                    f"Invalid template {part} (line {e.lineno}): {e.message}",
                    {"part": part, "line": e.lineno}
                ) from e

    async def add(self, request: TemplateCreate) -> NotificationTemplate:
        """
        Store a new template after validating it.

        Raises:
            TemplateSyntaxError: title or body does not parse
            TemplateExists: name already taken
        """
        self.validate(request.title, request.body)
        now = self._clock()
        template = NotificationTemplate(
            name=request.name,
            title=request.title,
            body=request.body,
            variables=dict(request.variables),
            description=request.description,
            created_at=now,
            updated_at=now,
        )
        async with session_scope(self._session_factory, "add_template") as db:
            existing = await db.execute(select(NotificationTemplate.id).where(NotificationTemplate.name == request.name))
            if existing.scalar_one_or_none() is not None:
                raise TemplateExists(f"Template '{request.name}' already exists")
            db.add(template)
            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise TemplateExists(f"Template '{request.name}' already exists") from e
        logger.info(f"Added template '{template.name}'")
        return template

    async def get(self, name: str) -> NotificationTemplate:
        async with session_scope(self._session_factory, "get_template") as db:
            result = await db.execute(select(NotificationTemplate).where(NotificationTemplate.name == name))
            template = result.scalar_one_or_none()
        if template is None:
            raise TemplateNotFound(f"Template '{name}' not found", {"name": name})
        return template

    async def list(self) -> List[NotificationTemplate]:
        async with session_scope(self._session_factory, "list_templates") as db:
            result = await db.execute(select(NotificationTemplate).order_by(NotificationTemplate.name))
            return list(result.scalars().all())

    async def update(self, name: str, changes: TemplateUpdate) -> NotificationTemplate:
        """Apply a partial update; the result is validated before it is stored."""
        values = changes.model_dump(exclude_unset=True)
        async with session_scope(self._session_factory, "update_template") as db:
            result = await db.execute(select(NotificationTemplate).where(NotificationTemplate.name == name))
            template = result.scalar_one_or_none()
            if template is None:
                raise TemplateNotFound(f"Template '{name}' not found", {"name": name})

            self.validate(values.get("title", template.title), values.get("body", template.body))
            for field, value in values.items():
                if value is not None:
                    setattr(template, field, dict(value) if field == "variables" else value)
            template.updated_at = self._clock()
            await db.commit()

        self._evict(name)
        logger.info(f"Updated template '{name}'")
        return template

    async def delete(self, name: str):
        async with session_scope(self._session_factory, "delete_template") as db:
            result = await db.execute(delete(NotificationTemplate).where(NotificationTemplate.name == name))
            await db.commit()
        if result.rowcount == 0:
            raise TemplateNotFound(f"Template '{name}' not found", {"name": name})
        self._evict(name)
        logger.info(f"Deleted template '{name}'")

    async def render(self, name: str, variables: Optional[Dict[str, Any]] = None) -> Tuple[str, str]:
        """
        Render a stored template.

        Returns:
            (title, body)

        Raises:
            TemplateNotFound: no template with that name
            TemplateSyntaxError: stored template does not parse
            TemplateRenderError: rendering failed (sandbox violation or an error
                raised while evaluating an expression)
        """
        template = await self.get(name)
        title_tpl, body_tpl = self._compiled(template)

        context = dict(template.variables or {})
        context.update(variables or {})
        context.update(system_variables(self._clock()))

        try:
            return title_tpl.render(context), body_tpl.render(context)
        except JinjaTemplateError as e:
            raise TemplateRenderError(f"Failed to render template '{name}': {e}", {"name": name}) from e
        except Exception as e:
            # Runtime errors in expressions, e.g. {{ count + 1 }} with a string count
            raise TemplateRenderError(
                f"Failed to render template '{name}': {type(e).__name__}: {e}", {"name": name}
            ) from e

    async def create_default_templates(self) -> int:
        """Seed the built-in templates that are missing. Returns how many were added."""
        created = 0
        for request in DEFAULT_TEMPLATES:
            try:
                await self.get(request.name)
                continue
            except TemplateNotFound:
                pass
            await self.add(request)
            created += 1
        if created:
            logger.info(f"Created {created} default template(s)")
        return created

    def _compiled(self, template: NotificationTemplate) -> Tuple[Template, Template]:
        """Compile lazily; a changed updated_at makes a new cache key."""
        key = (template.name, template.updated_at)
        compiled = self._cache.get(key)
        if compiled is not None:
            self._cache.move_to_end(key)
            return compiled

        self.validate(template.title, template.body)
        compiled = (self._env.from_string(template.title or ""), self._env.from_string(template.body or ""))
        self._cache[key] = compiled
        while len(self._cache) > self.config.cache_size:
            self._cache.popitem(last=False)
        return compiled

    def _evict(self, name: str):
        for key in [key for key in self._cache if key[0] == name]:
            del self._cache[key]
