"""xAI Grok chat completions client for generating image prompts."""

from typing import Any

import httpx
import structlog

from atelier.models.prompt_job import PromptOperation
from atelier.services.exceptions import PromptProviderRejected, PromptProviderUnavailable

logger = structlog.get_logger(__name__)

DEFAULT_MODELS = (
    "grok-4-fast-reasoning",
    "grok-4",
    "grok-3-mini",
    "grok-2-vision-1212",
    "grok-2-image-1212",
)

GENERATE_SYSTEM_PROMPT = (
    "You write prompts for an image editing model. The last image is the target to edit; "
    "any earlier images are style and content references. Reply with a single prompt "
    "of at most 60 words and nothing else."
)

ENHANCE_SYSTEM_PROMPT = (
    "You improve prompts for an image editing model. Rewrite the given prompt following "
    "the user's instructions and the attached images. Reply with the improved prompt "
    "of at most 60 words and nothing else."
)


class GrokPromptProvider:
    """Prompt provider with ordered model fallback.

    Each model is tried in turn; retryable failures (rate limits, unknown model,
    empty completion, timeouts) move on to the next model. Authentication failures
    stop immediately.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.x.ai/v1",
        models: list[str] | tuple[str, ...] = DEFAULT_MODELS,
        timeout: float = 30.0,
        max_tokens: int = 100,
        temperature: float = 0.7,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.models = list(models)
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.transport = transport
        self.headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def _messages(
        self,
        image_urls: list[str],
        operation: PromptOperation,
        existing_prompt: str | None,
        instructions: str | None,
    ) -> list[dict[str, Any]]:
        if operation == PromptOperation.ENHANCE:
            system = ENHANCE_SYSTEM_PROMPT
            text = f"Current prompt: {existing_prompt or ''}"
            if instructions:
                text += f"\nInstructions: {instructions}"
        else:
            system = GENERATE_SYSTEM_PROMPT
            text = "Write a prompt that transforms the target image using the references."
            if instructions:
                text += f"\nAdditional guidance: {instructions}"

        content: list[dict[str, Any]] = [{"type": "text", "text": text}]
        content.extend({"type": "image_url", "image_url": {"url": url}} for url in image_urls)
        return [
            {"role": "system", "content": system},
            {"role": "user", "content": content},
        ]

    async def generate(
        self,
        image_urls: list[str],
        operation: PromptOperation = PromptOperation.GENERATE,
        existing_prompt: str | None = None,
        instructions: str | None = None,
    ) -> str:
        """Generate prompt text for the given images.

        Args:
            image_urls: Signed image URLs (references first, target last)
            operation: generate a new prompt or enhance existing_prompt
            existing_prompt: Prompt to rewrite (enhance)
            instructions: Optional user guidance

        Returns:
            Prompt text (stripped)

        Raises:
            PromptProviderRejected: Authentication failure (401, 403)
            PromptProviderUnavailable: Every model failed
        """
        messages = self._messages(image_urls, operation, existing_prompt, instructions)
        errors: list[str] = []

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            for model in self.models:
                try:
                    response = await client.post(
                        f"{self.base_url}/chat/completions",
                        headers=self.headers,
                        json={
                            "model": model,
                            "messages": messages,
                            "max_tokens": self.max_tokens,
                            "temperature": self.temperature,
                        },
                    )
                except httpx.TimeoutException as e:
                    errors.append(f"{model}: timeout ({e})")
                    continue
                except httpx.TransportError as e:
                    errors.append(f"{model}: network error ({e})")
                    continue

                if response.status_code in (401, 403):
                    raise PromptProviderRejected(
                        f"Authentication failed ({response.status_code}). "
                        "Check XAI_API_KEY configuration in .env file."
                    )
                if response.status_code >= 400:
                    errors.append(f"{model}: HTTP {response.status_code}")
                    logger.warning(
                        "prompt_provider.model_failed",
                        model=model,
                        status_code=response.status_code,
                    )
                    continue

                choices = response.json().get("choices") or []
                text = ""
                if choices:
                    text = ((choices[0].get("message") or {}).get("content") or "").strip()
                if not text:
                    errors.append(f"{model}: empty completion")
                    continue

                logger.info("prompt_provider.generated", model=model, length=len(text))
                return text

        raise PromptProviderUnavailable("All prompt models failed: " + "; ".join(errors))
