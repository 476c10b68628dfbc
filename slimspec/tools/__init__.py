from .context_builder import build_context, load_source_text, render_prompt
from .response_parser import parse_response

__all__ = [
    "build_context",
    "load_source_text",
    "render_prompt",
    "parse_response",
]
