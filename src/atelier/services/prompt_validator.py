"""Prompt validation for image generation.

Validates text prompts before they are written into a job payload.
"""

MAX_PROMPT_LENGTH = 1000


def validate_prompt(prompt: str) -> str:
    """Validate prompt text for image generation.

    Args:
        prompt: Prompt text from the caller or the prompt provider

    Returns:
        Validated prompt with surrounding whitespace stripped

    Raises:
        ValueError: If prompt is empty, None, not a string, or exceeds 1000 characters
    """
    if not prompt:
        raise ValueError("Prompt cannot be empty or None")

    if not isinstance(prompt, str):
        raise ValueError(f"Prompt must be a string, got {type(prompt).__name__}")

    prompt = prompt.strip()
    if not prompt:
        raise ValueError("Prompt cannot be blank")

    if len(prompt) > MAX_PROMPT_LENGTH:
        raise ValueError(
            f"Prompt exceeds maximum length of {MAX_PROMPT_LENGTH} characters (got {len(prompt)})"
        )

    return prompt
