"""Message template loading and rendering."""

from pathlib import Path

import yaml

from core.notifications.errors import ValidationError

_templates: dict | None = None


def load_templates() -> dict:
    """
    Load message templates from YAML file.

    Caches templates after first load.
    """
    global _templates
    if _templates is not None:
        return _templates

    yaml_path = Path(__file__).parent / "messages.yaml"
    with open(yaml_path) as f:
        _templates = yaml.safe_load(f)

    return _templates


def render_message(template: str, context: dict) -> str:
    """
    Render a message template with context variables.

    Args:
        template: String with {variable} placeholders
        context: Dict of variable names to values

    Returns:
        Rendered string

    Raises:
        KeyError: If a required variable is missing from context
    """
    return template.format(**context)


def get_message(template_id: str, part: str, context: dict) -> str:
    """
    Get and render one part ("title" or "body") of a template.

    Raises:
        ValidationError: If the template or part is unknown, or a variable is missing
    """
    templates = load_templates()
    template = templates.get(template_id, {}).get(part)
    if template is None:
        raise ValidationError(
            f"Unknown template {template_id!r}",
            [{"field": "template_id", "message": f"unknown template {template_id!r}"}],
        )
    try:
        return render_message(template, context)
    except KeyError as e:
        raise ValidationError(
            f"Template {template_id!r} is missing variable {e.args[0]!r}",
            [{"field": f"template_data.{e.args[0]}", "message": "required by template"}],
        )


def render_notification(template_id: str, context: dict) -> tuple[str | None, str]:
    """Render (title, body) for a template; title is optional in the YAML."""
    templates = load_templates()
    title = None
    if "title" in templates.get(template_id, {}):
        title = get_message(template_id, "title", context)
    return title, get_message(template_id, "body", context)
