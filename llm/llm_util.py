import json
import re
from pathlib import Path
from typing import Optional

from html2text import html2text
from langchain_core.prompts import PromptTemplate

from feed_pipeline.constants import PROMPT_MAX_FIELD_LENGTH
from llm.provider import AiCompletionResponse, AiProvider
from util.logging_util import setup_logger, log_llm_interaction

logger = setup_logger(__name__)

INJECTION_PREFIXES = (
    "ignore previous",
    "ignore all",
    "ignore the above",
    "disregard",
    "forget previous",
    "you are now",
    "new instructions",
    "system:",
    "assistant:",
)

_ROLE_TAG = re.compile(r"</?\s*(system|user|assistant|instruction|instructions|prompt)[^>]*>", re.IGNORECASE)


def render_prompt(template_path: Path, params: dict) -> str:
    """
    Renders a Jinja2 template file with the given parameters.

    Args:
        template_path: Path to the Jinja2 template file.
        params: A dictionary of parameters to populate the template.

    Returns:
        The rendered prompt text.
    """
    with open(template_path, "r") as f:
        template_content = f.read()

    prompt = PromptTemplate.from_template(template_content, template_format="jinja2")
    return prompt.format(**params)


def get_llm_response(
    provider: AiProvider,
    template_path: Path,
    params: dict,
    system_prompt: Optional[str] = None,
    max_tokens: Optional[int] = None,
    temperature: Optional[float] = None,
) -> AiCompletionResponse:
    """
    Generates a completion from a Jinja2 template file and parameters.

    Args:
        provider: The AI provider to call.
        template_path: Path to the Jinja2 template used as the user message.
        params: A dictionary of parameters to populate the template.
        system_prompt: Optional system message.
        max_tokens: Optional output token cap.
        temperature: Optional sampling temperature.

    Returns:
        The provider response. Failures come back as error-tagged text.
    """
    messages = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": render_prompt(template_path, params)})

    response = provider.complete(messages, max_tokens=max_tokens, temperature=temperature)

    log_llm_interaction(
        logger, str(template_path), params, response.text, f"{response.provider}/{response.model}", response.duration_ms
    )
    return response


def strip_markdown_fences(text: str) -> str:
    """Remove a surrounding ``` / ```json code block from a model response."""
    text = text.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        lines = lines[1:]
        if lines and lines[-1].strip().startswith("```"):
            lines = lines[:-1]
        text = "\n".join(lines)
    return text.strip()


def parse_json_response(text: str) -> Optional[dict]:
    """Parse a JSON object out of a model response, or None if it is not one."""
    try:
        result = json.loads(strip_markdown_fences(text))
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse LLM response as JSON: {e}")
        logger.error(f"Response was: {text[:500]}")
        return None
    if not isinstance(result, dict):
        return None
    return result


def sanitize_for_prompt(text: Optional[str], max_length: int = PROMPT_MAX_FIELD_LENGTH) -> str:
    """Make untrusted feed text safe to embed in a prompt.

    Converts HTML to plain text, truncates, drops lines that look like
    injected instructions and strips role tags.
    """
    if not text:
        return ""
    if "<" in text:
        text = html2text(text)
    text = _ROLE_TAG.sub("", text)
    lines = [
        line for line in text.splitlines()
        if not line.strip().lower().startswith(INJECTION_PREFIXES)
    ]
    return "\n".join(lines).strip()[:max_length]
