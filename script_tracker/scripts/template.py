from pathlib import Path

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from script_tracker.core.datetime_utils import utc_now

# Jinja2 environment for generated script files (plain Python, no HTML escaping)
template_dir = Path(__file__).parent.parent / "templates"
jinja_env = Environment(
    loader=FileSystemLoader(template_dir),
    autoescape=False,
    keep_trailing_newline=True,
    undefined=StrictUndefined,
)


def class_name_for(slug: str) -> str:
    """`backfill_user_slugs` -> `BackfillUserSlugs`."""
    name = "".join(part.capitalize() for part in slug.split("_") if part)
    return name if name.isidentifier() else f"Script{name}"


def render_script(filename: str, slug: str, description: str = "") -> str:
    """Render the source of a new script file."""
    template = jinja_env.get_template("script.py.j2")
    return template.render(
        filename=filename,
        class_name=class_name_for(slug),
        description=description,
        created_at=utc_now().strftime("%Y-%m-%d %H:%M:%S"),
    )
