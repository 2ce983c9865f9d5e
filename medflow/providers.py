import asyncio
from collections.abc import Callable
import logging

from google import genai
from google.genai import errors as genai_errors
from google.genai import types
import httpx

from medflow.errors import ProviderError


logger = logging.getLogger(__name__)


class GeminiModelCaller:
    """Model caller backed by the google-genai async client.

    A client is created per call from the credential handed in by the engine,
    and closed once the request finishes, so no API key outlives the request.
    """

    def __init__(
        self,
        *,
        temperature: float = 0.2,
        timeout_seconds: float = 60.0,
        client_factory: Callable[[str], genai.Client] | None = None,
    ) -> None:
        self.temperature = temperature
        self.timeout_seconds = timeout_seconds
        self.client_factory = client_factory or (lambda credential: genai.Client(api_key=credential))

    async def __call__(
        self,
        credential: str,
        model: str,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
    ) -> str:
        if not credential:
            raise ProviderError("no API credential supplied")
        if not model:
            raise ProviderError("step has no model configured")

        client = self.client_factory(credential)
        config = types.GenerateContentConfig(
            system_instruction=system_prompt or None,
            max_output_tokens=max_tokens,
            temperature=self.temperature,
        )
        try:
            response = await asyncio.wait_for(
                client.aio.models.generate_content(model=model, contents=user_prompt, config=config),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise ProviderError(f"{model} did not respond within {self.timeout_seconds}s") from exc
        except genai_errors.APIError as exc:
            raise ProviderError(f"{model} request failed: {exc}") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"{model} transport error: {exc}") from exc
        finally:
            await client.aio.aclose()

        text = response.text
        if not text:
            raise ProviderError(f"{model} returned an empty response")
        logger.debug("model response received", extra={"model": model, "chars": len(text)})
        return text
