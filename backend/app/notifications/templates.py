"""
templates.py — Template rendering and template storage.

═══════════════════════════════════════════════════════════════════════════
TEMPLATE GRAMMAR
═══════════════════════════════════════════════════════════════════════════

    {{name}}                    value lookup; missing keys render as ""
    {{ user.first_name }}       dotted path into nested mappings
    {{#if premium}}..{{/if}}    block kept when the value is truthy
    {{#if a}}..{{else}}..{{/if}}
                                else branch; blocks nest

    Rendering is pure: the same template and context always produce the
    same text. HTML templates escape substituted values; literal template
    text is never escaped.

═══════════════════════════════════════════════════════════════════════════
CONTENT RESOLUTION
═══════════════════════════════════════════════════════════════════════════

    context = template.default_data  ⊕  notification.data   (data wins)
    title   = render(template.subject)        or notification.title
    message = render(template.body_template)
    html    = render(template.html_template, escape=True)   (optional)
"""

from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.errors import ConflictError, ValidationError
from backend.app.notifications.models import ChannelType, RenderedContent
from backend.app.notifications.records import NotificationTemplate

logger = logging.getLogger(__name__)


class TemplateSyntaxError(ValueError):
    """Unbalanced or malformed block tags."""


# ═══════════════════════════════════════════════════════════════════════════
# Parser
# ═══════════════════════════════════════════════════════════════════════════

_TAG_RE = re.compile(
    r"\{\{\s*(?P<keyword>#if\b|/if\b|else\b)?\s*(?P<path>[A-Za-z_][\w.]*)?\s*\}\}"
)


@dataclass
class _Var:
    path: Tuple[str, ...]


@dataclass
class _If:
    path: Tuple[str, ...]
    then: List["_Node"] = field(default_factory=list)
    otherwise: List["_Node"] = field(default_factory=list)


_Node = Union[str, _Var, _If]


@lru_cache(maxsize=256)
def _parse(template: str) -> Tuple[_Node, ...]:
    root: List[_Node] = []
    # (open block, node list currently being filled)
    stack: List[Tuple[_If, List[_Node]]] = []
    current = root
    pos = 0

    for match in _TAG_RE.finditer(template):
        if match.start() > pos:
            current.append(template[pos:match.start()])
        pos = match.end()

        keyword = match.group("keyword")
        path = match.group("path")

        if keyword is None:
            if path is None:
                current.append(match.group(0))  # "{{}}" stays literal
            else:
                current.append(_Var(tuple(path.split("."))))
        elif keyword == "#if":
            if not path:
                raise TemplateSyntaxError(f"{{{{#if}}}} without a condition at offset {match.start()}")
            block = _If(tuple(path.split(".")))
            current.append(block)
            stack.append((block, current))
            current = block.then
        elif keyword == "else":
            if not stack or current is not stack[-1][0].then:
                raise TemplateSyntaxError(f"{{{{else}}}} outside an #if block at offset {match.start()}")
            current = stack[-1][0].otherwise
        else:  # /if
            if not stack:
                raise TemplateSyntaxError(f"unmatched {{{{/if}}}} at offset {match.start()}")
            _, current = stack.pop()

    if stack:
        raise TemplateSyntaxError("unclosed {{#if}} block")
    if pos < len(template):
        current.append(template[pos:])
    return tuple(root)


# ═══════════════════════════════════════════════════════════════════════════
# Renderer
# ═══════════════════════════════════════════════════════════════════════════

def _lookup(context: Mapping[str, Any], path: Tuple[str, ...]) -> Any:
    value: Any = context
    for part in path:
        if isinstance(value, Mapping):
            value = value.get(part)
        else:
            return None
        if value is None:
            return None
    return value


def _emit(nodes, context: Mapping[str, Any], out: List[str], escape: bool) -> None:
    for node in nodes:
        if isinstance(node, str):
            out.append(node)
        elif isinstance(node, _Var):
            value = _lookup(context, node.path)
            if value is None:
                continue
            text = str(value)
            out.append(html.escape(text) if escape else text)
        else:
            branch = node.then if _lookup(context, node.path) else node.otherwise
            _emit(branch, context, out, escape)


def render(template: Optional[str], context: Optional[Mapping[str, Any]] = None, *, escape: bool = False) -> str:
    """
    Render ``template`` against ``context``.

    Args:
        template: Template text; None renders as "".
        context: Variables; nested mappings are reachable by dotted paths.
        escape: HTML-escape substituted values (for html bodies).

    Raises:
        TemplateSyntaxError: unbalanced {{#if}}/{{else}}/{{/if}} tags.
    """
    if not template:
        return ""
    out: List[str] = []
    _emit(_parse(template), context or {}, out, escape)
    return "".join(out)


def validate_template(template: Optional[str]) -> None:
    """Raise TemplateSyntaxError if ``template`` would not render."""
    if template:
        _parse(template)


def render_content(
    template: Optional[NotificationTemplate],
    *,
    title: str,
    message: str,
    data: Optional[Dict[str, Any]] = None,
    html_content: Optional[str] = None,
) -> RenderedContent:
    """Resolve final title/message/html for one notification."""
    data = data or {}
    if template is None:
        return RenderedContent(title=title, message=message, html=html_content, data=data)

    context = {**(template.default_data or {}), **data}
    return RenderedContent(
        title=render(template.subject, context) if template.subject else title,
        message=render(template.body_template, context),
        html=render(template.html_template, context, escape=True) if template.html_template else html_content,
        data=data,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Template store
# ═══════════════════════════════════════════════════════════════════════════

class TemplateStore:
    """CRUD for ``notification_templates``."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._session_factory = session_factory
        self._clock = clock

    async def create(
        self,
        *,
        name: str,
        channel_type: str,
        category: str,
        body_template: str,
        subject: Optional[str] = None,
        html_template: Optional[str] = None,
        default_data: Optional[Dict[str, Any]] = None,
        is_active: bool = True,
    ) -> NotificationTemplate:
        try:
            ChannelType(channel_type)
        except ValueError:
            raise ValidationError(f"Unknown channel type '{channel_type}'", field="channel_type")
        for label, text in (("subject", subject), ("body_template", body_template), ("html_template", html_template)):
            try:
                validate_template(text)
            except TemplateSyntaxError as e:
                raise ValidationError(f"Invalid {label}: {e}", field=label)

        now = self._clock()
        record = NotificationTemplate(
            name=name,
            channel_type=channel_type,
            category=category,
            subject=subject,
            body_template=body_template,
            html_template=html_template,
            default_data=default_data or {},
            is_active=is_active,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self._session_factory() as session, session.begin():
                session.add(record)
        except IntegrityError:
            raise ConflictError(f"Template '{name}' already exists")
        logger.info("Template %s created (%s/%s)", name, channel_type, category)
        return record

    async def get(self, template_id: int) -> Optional[NotificationTemplate]:
        async with self._session_factory() as session:
            return await session.get(NotificationTemplate, template_id)

    async def list(self, *, channel_type: Optional[str] = None, active_only: bool = True) -> List[NotificationTemplate]:
        stmt = select(NotificationTemplate).order_by(NotificationTemplate.id)
        if channel_type:
            stmt = stmt.where(NotificationTemplate.channel_type == channel_type)
        if active_only:
            stmt = stmt.where(NotificationTemplate.is_active.is_(True))
        async with self._session_factory() as session:
            return list((await session.scalars(stmt)).all())
