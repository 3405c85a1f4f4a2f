"""Markdown to HTML rendering for panel transcripts.

Model replies are markdown; user prompts are shown verbatim. A panel's
whole transcript is rendered into one HTML document for a QTextBrowser.
"""

import html
from typing import Sequence

import markdown

from ..config.themes import theme, fonts, metrics
from ..llm.base_adapter import ChatMessage


MARKDOWN_EXTENSIONS = ["fenced_code", "tables", "nl2br"]


def get_transcript_css(accent: str) -> str:
    """CSS for a rendered transcript.

    Args:
        accent: Accent color of the panel

    Returns:
        CSS stylesheet string
    """
    return f"""
        body {{
            color: {theme.text_primary};
            font-family: {fonts.chat};
            font-size: {metrics.font_medium}px;
            line-height: 1.5;
        }}
        .user {{
            background-color: {theme.user_block};
            border-left: 3px solid {accent};
            padding: 8px 12px;
            margin: 12px 0 8px 0;
            white-space: pre-wrap;
        }}
        .assistant {{
            background-color: {theme.assistant_block};
            padding: 4px 12px;
            margin-bottom: 8px;
        }}
        .streaming {{
            color: {theme.text_secondary};
        }}
        p {{ margin-top: 0; margin-bottom: 8px; }}
        code {{
            font-family: {fonts.mono};
            background-color: {theme.background_tertiary};
        }}
        pre {{
            font-family: {fonts.mono};
            font-size: 12px;
            background-color: {theme.background_tertiary};
            border: 1px solid {theme.border};
            padding: 8px 12px;
        }}
        blockquote {{
            border-left: 3px solid {theme.border};
            color: {theme.text_secondary};
            padding-left: 12px;
        }}
        th, td {{
            border: 1px solid {theme.border};
            padding: 4px 8px;
        }}
    """


def render_markdown(text: str) -> str:
    """Convert markdown text to an HTML fragment."""
    if not text:
        return ""
    return markdown.markdown(text, extensions=MARKDOWN_EXTENSIONS)


def render_transcript(
    messages: Sequence[ChatMessage],
    current_response: str = "",
    accent: str = "",
) -> str:
    """Render a panel's history plus the reply still streaming in.

    Args:
        messages: Finished history of the panel
        current_response: Partial reply of the active stream
        accent: Accent color of the panel

    Returns:
        Complete HTML document
    """
    blocks = []
    for message in messages:
        if message.role == "user":
            blocks.append(f'<div class="user">{html.escape(message.content)}</div>')
        else:
            blocks.append(f'<div class="assistant">{render_markdown(message.content)}</div>')

    if current_response:
        # Partial markdown is shown raw so half-open fences don't swallow the rest
        blocks.append(
            f'<div class="assistant streaming">'
            f'<p style="white-space: pre-wrap;">{html.escape(current_response)}</p></div>'
        )

    css = get_transcript_css(accent or theme.accent)
    return f"<html><head><style>{css}</style></head><body>{''.join(blocks)}</body></html>"
