#!/usr/bin/env python3
"""
Email template utilities for rendering HTML email templates.
"""

import os
import re
import html
from datetime import datetime
from typing import Any, Dict, Optional

from dateutil import parser as date_parser
from celery.utils.log import get_task_logger

logger = get_task_logger(__name__)

_PLACEHOLDER_RE = re.compile(r"{{\s*([\w.]+)\s*}}")


def escape_html(text: Optional[str]) -> str:
    """Escape text for an HTML body and keep its line breaks as <br>."""
    if not text:
        return ''
    return html.escape(str(text), quote=True).replace('\n', '<br>')


def short_ticket_id(ticket_id: Optional[str]) -> str:
    """First 8 characters of a ticket id, uppercased (e.g. "3F2A9C1B")."""
    if not ticket_id:
        return 'N/A'
    return str(ticket_id)[:8].upper()


def format_ticket_date(value: Any = None) -> str:
    """
    Format a timestamp the way ticket emails show it.

    Args:
        value: datetime, ISO string or None (now)

    Returns:
        str: e.g. "Mar 4, 2025, 3:07 PM"
    """
    if value is None or value == '':
        dt = datetime.now()
    elif isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = date_parser.isoparse(str(value))
        except (ValueError, OverflowError):
            return str(value)

    hour = dt.hour % 12 or 12
    suffix = 'AM' if dt.hour < 12 else 'PM'
    return f"{dt.strftime('%b')} {dt.day}, {dt.year}, {hour}:{dt.minute:02d} {suffix}"


def load_email_template(template_name: str) -> str:
    """
    Load an email template from the email_templates directory.

    Args:
        template_name (str): Name of the template file (e.g., 'team_invite.html')

    Returns:
        str: Template content as a string, or empty string if not found
    """
    current_dir = os.path.dirname(os.path.abspath(__file__))
    template_path = os.path.join(current_dir, 'email_templates', template_name)
    try:
        with open(template_path, 'r', encoding='utf-8') as file:
            return file.read()
    except FileNotFoundError:
        logger.error(f"[EMAIL_TEMPLATE] Template file not found: {template_name}")
        return ""


def substitute_placeholders(template: str, data: Dict[str, Any]) -> str:
    """
    Replace {{key}} placeholders with values from data.

    Unknown keys are left in place so callers can run several passes
    (template fields, then custom parameters, then tool parameters).
    """
    def _replace(match):
        key = match.group(1)
        if key not in data:
            return match.group(0)
        value = data[key]
        return '' if value is None else str(value)

    return _PLACEHOLDER_RE.sub(_replace, template or '')


def toggle_section(template: str, section: str, show: bool) -> str:
    """Keep or drop a {{#section}}...{{/section}} block."""
    if show:
        template = template.replace(f'{{{{#{section}}}}}', '')
        return template.replace(f'{{{{/{section}}}}}', '')
    return re.sub(rf'{{{{#{section}}}}}.*?{{{{/{section}}}}}', '', template, flags=re.DOTALL)


def render_template_with_data(template_name: str, sections: Optional[Dict[str, bool]] = None, **kwargs) -> str:
    """
    Generic function to render any template with provided data.

    Args:
        template_name (str): Name of the template file
        sections: {{#name}} blocks to keep (True) or drop (False)
        **kwargs: Template variables

    Returns:
        str: Rendered HTML template with leftover placeholders removed
    """
    template = load_email_template(template_name)
    if not template:
        return ""

    for section, show in (sections or {}).items():
        template = toggle_section(template, section, show)

    template = substitute_placeholders(template, kwargs)

    # Clean up any remaining placeholder sections
    template = re.sub(r'{{#\w+}}', '', template)
    template = re.sub(r'{{/\w+}}', '', template)
    return _PLACEHOLDER_RE.sub('', template)
