"""Self-contained landing page and document generation tools."""

import html
from typing import Literal

from pydantic import BaseModel, Field

from quill.tools.registry import Tool, ToolRender, ToolResult

Theme = Literal["modern", "dark", "light", "colorful", "minimal"]

THEMES: dict[str, dict[str, str]] = {
    "modern": {
        "primary": "#f9c313",
        "secondary": "#1f2937",
        "background": "#ffffff",
        "text": "#374151",
        "accent": "#eab308",
    },
    "dark": {
        "primary": "#f9c313",
        "secondary": "#ffffff",
        "background": "#111827",
        "text": "#f3f4f6",
        "accent": "#eab308",
    },
    "light": {
        "primary": "#f9c313",
        "secondary": "#6b7280",
        "background": "#f9fafb",
        "text": "#374151",
        "accent": "#eab308",
    },
    "colorful": {
        "primary": "#f9c313",
        "secondary": "#3b82f6",
        "background": "#ffffff",
        "text": "#1f2937",
        "accent": "#ef4444",
    },
    "minimal": {
        "primary": "#000000",
        "secondary": "#6b7280",
        "background": "#ffffff",
        "text": "#374151",
        "accent": "#f9c313",
    },
}

_FONT_STACK = "-apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, 'Helvetica Neue', Arial, sans-serif"


class Section(BaseModel):
    heading: str = Field(min_length=1, description="Section heading")
    content: str = Field(default="", description="Section body text")


class LandingPageArgs(BaseModel):
    title: str = Field(min_length=1, description="Page title")
    subtitle: str = Field(default="", description="One-line description under the title")
    theme: Theme = Field(default="modern", description="Color theme")
    sections: list[Section] = Field(default_factory=list, description="Content sections")
    call_to_action: str = Field(default="Get Started", description="Main call-to-action label")


class DocumentArgs(BaseModel):
    title: str = Field(min_length=1, description="Document title")
    sections: list[Section] = Field(min_length=1, description="Document sections")
    theme: Theme = Field(default="light", description="Color theme")


def _colors(theme: str) -> dict[str, str]:
    return THEMES.get(theme, THEMES["modern"])


def _paragraphs(text: str, css_class: str = "") -> list[str]:
    """Escape text and split blank-line separated blocks into paragraphs."""
    attr = f' class="{css_class}"' if css_class else ""
    blocks = [block.strip() for block in (text or "").split("\n\n")]
    return [
        f"<p{attr}>{html.escape(block).replace(chr(10), '<br>')}</p>"
        for block in blocks
        if block
    ]


def render_landing_page(args: LandingPageArgs) -> str:
    """Build a complete landing page with inline CSS and no external assets."""
    c = _colors(args.theme)
    title = html.escape(args.title)

    lines = [
        "<!DOCTYPE html>",
        '<html lang="en">',
        "<head>",
        '<meta charset="UTF-8">',
        '<meta name="viewport" content="width=device-width, initial-scale=1.0">',
        f"<title>{title}</title>",
        "<style>",
        "* { margin: 0; padding: 0; box-sizing: border-box; }",
        f"body {{ font-family: {_FONT_STACK}; line-height: 1.6; color: {c['text']}; background-color: {c['background']}; }}",
        ".container { max-width: 1200px; margin: 0 auto; padding: 0 20px; }",
        f"header {{ padding: 2rem 0; text-align: center; border-bottom: 1px solid {c['secondary']}20; }}",
        f"h1 {{ font-size: 3rem; font-weight: 800; color: {c['secondary']}; margin-bottom: 1rem; }}",
        ".subtitle { font-size: 1.25rem; max-width: 600px; margin: 0 auto; }",
        f".hero {{ padding: 4rem 0; text-align: center; background: linear-gradient(135deg, {c['primary']}10, {c['accent']}10); }}",
        f".cta-button {{ display: inline-block; background: {c['primary']}; color: {c['secondary']}; padding: 1rem 2rem; "
        f"text-decoration: none; border-radius: 12px; font-weight: 600; border: 2px solid {c['primary']}; }}",
        f".cta-button:hover {{ background: {c['accent']}; }}",
        f".content-section {{ padding: 3rem 0; border-bottom: 1px solid {c['secondary']}10; }}",
        ".content-section:last-child { border-bottom: none; }",
        f".section-title {{ font-size: 2rem; font-weight: 700; color: {c['secondary']}; margin-bottom: 1.5rem; text-align: center; }}",
        ".section-content { font-size: 1.1rem; max-width: 800px; margin: 0 auto; text-align: center; }",
        f"footer {{ padding: 2rem 0; text-align: center; font-size: 0.9rem; border-top: 1px solid {c['secondary']}20; }}",
        "@media (max-width: 768px) { h1 { font-size: 2rem; } .section-title { font-size: 1.5rem; } }",
        "</style>",
        "</head>",
        "<body>",
        "<header>",
        '<div class="container">',
        f"<h1>{title}</h1>",
    ]
    if args.subtitle:
        lines.append(f'<p class="subtitle">{html.escape(args.subtitle)}</p>')
    lines.extend([
        "</div>",
        "</header>",
        '<section class="hero">',
        '<div class="container">',
        f'<a href="#" class="cta-button">{html.escape(args.call_to_action)}</a>',
        "</div>",
        "</section>",
        "<main>",
    ])
    for section in args.sections:
        lines.append('<section class="content-section">')
        lines.append('<div class="container">')
        lines.append(f'<h2 class="section-title">{html.escape(section.heading)}</h2>')
        lines.append('<div class="section-content">')
        lines.extend(_paragraphs(section.content))
        lines.append("</div>")
        lines.append("</div>")
        lines.append("</section>")
    lines.extend([
        "</main>",
        "<footer>",
        f'<div class="container"><p>&copy; {title}</p></div>',
        "</footer>",
        "</body>",
        "</html>",
    ])
    return "\n".join(lines)


def render_document(args: DocumentArgs) -> str:
    """Build a document body as clean HTML for the document panel."""
    c = _colors(args.theme)
    lines = [
        f'<article style="font-family: {_FONT_STACK}; color: {c["text"]}; background: {c["background"]}; line-height: 1.6;">',
        f'<h1 style="color: {c["secondary"]};">{html.escape(args.title)}</h1>',
    ]
    for section in args.sections:
        lines.append(f'<h2 style="color: {c["secondary"]};">{html.escape(section.heading)}</h2>')
        lines.extend(_paragraphs(section.content))
    lines.append("</article>")
    return "\n".join(lines)


class LandingPageTool(Tool):
    """Generate a complete landing page shown in the side panel."""

    name = "generate_landing_page"
    description = (
        "Generate a complete, self-contained HTML landing page with inline CSS. "
        "Themes: modern, dark, light, colorful, minimal."
    )
    args_model = LandingPageArgs

    async def execute(self, args: LandingPageArgs) -> ToolResult:
        page = render_landing_page(args)
        return ToolResult(
            success=True,
            content=(
                f"Landing page '{args.title}' generated with the {args.theme} theme "
                f"and {len(args.sections)} section(s). It is displayed to the user in the side panel."
            ),
            data={"title": args.title, "theme": args.theme, "html_content": page},
        )

    def render(self, result: ToolResult) -> ToolRender:
        title = str(result.data.get("title", ""))
        return ToolRender(
            content_fragment=f"Landing page **{title}** is ready in the side panel.",
            message_patch={
                "landing_page_content": {
                    "html_content": result.data.get("html_content", ""),
                    "title": title,
                    "theme": result.data.get("theme", "modern"),
                    "should_open_right_panel": True,
                },
            },
        )

    def status_line(self, args: LandingPageArgs) -> str:
        return f"Building landing page '{args.title}'"


class DocumentTool(Tool):
    """Generate a structured document shown in the side panel."""

    name = "generate_document"
    description = "Generate a structured document (report, guide, summary) with a title and sections."
    args_model = DocumentArgs

    async def execute(self, args: DocumentArgs) -> ToolResult:
        body = render_document(args)
        outline = "\n".join(f"- {section.heading}" for section in args.sections)
        return ToolResult(
            success=True,
            content=f"Document '{args.title}' generated with sections:\n{outline}",
            data={"title": args.title, "content": body},
        )

    def render(self, result: ToolResult) -> ToolRender:
        title = str(result.data.get("title", ""))
        return ToolRender(
            content_fragment=f"Document **{title}** is ready in the side panel.",
            message_patch={
                "document_content": {
                    "title": title,
                    "content": result.data.get("content", ""),
                    "should_open_right_panel": True,
                },
                "has_document": True,
            },
        )

    def status_line(self, args: DocumentArgs) -> str:
        return f"Writing document '{args.title}'"
