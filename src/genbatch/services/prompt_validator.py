"""Prompt validation for batch generation.

Validates prompt lists before any provider call is made.
"""

MAX_PROMPT_LENGTH = 4000
MAX_BATCH_SIZE = 500


def validate_prompt(prompt: str) -> str:
    """Validate a single resolved prompt.

    Args:
        prompt: Prompt text (after prefix/suffix composition)

    Returns:
        Validated prompt (stripped)

    Raises:
        ValueError: If prompt is empty, not a string, or exceeds the maximum length
    """
    if not isinstance(prompt, str):
        raise ValueError(f"Prompt must be a string, got {type(prompt).__name__}")

    prompt = prompt.strip()
    if not prompt:
        raise ValueError("Prompt cannot be empty")

    if len(prompt) > MAX_PROMPT_LENGTH:
        raise ValueError(
            f"Prompt exceeds maximum length of {MAX_PROMPT_LENGTH} characters (got {len(prompt)})"
        )

    return prompt


def validate_prompts(prompts: list[str]) -> list[str]:
    """Validate a batch of prompts.

    Raises:
        ValueError: If the list is empty, too large, or any prompt is invalid
    """
    if not prompts:
        raise ValueError("At least one prompt is required")
    if len(prompts) > MAX_BATCH_SIZE:
        raise ValueError(f"A batch holds at most {MAX_BATCH_SIZE} prompts (got {len(prompts)})")

    validated = []
    for position, prompt in enumerate(prompts):
        try:
            validated.append(validate_prompt(prompt))
        except ValueError as e:
            raise ValueError(f"Prompt {position}: {e}") from e
    return validated
