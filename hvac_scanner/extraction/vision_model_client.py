"""Model client abstraction layer.

Extended description:
        * Encapsulates provider/model setup (OpenAI or Groq through pydantic-ai)
          so swapping vendors only touches this file.
        * Exposes a single async API (VisionModelClient.run) returning the raw
          assistant text + timing. Parsing is NOT done here: the reply goes
          through norm_helper, which knows how to repair fences/prose.
        * Configuration is passed in at construction; there is no module-level
          client, so importing this module never needs credentials.
"""

import logging
import time
from functools import lru_cache
from typing import Any, Dict, List, Optional, Sequence

from pydantic_ai import Agent, BinaryContent
from pydantic_ai.models.groq import GroqModel
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.groq import GroqProvider
from pydantic_ai.providers.openai import OpenAIProvider

from hvac_scanner.core.config import Settings, get_settings

log = logging.getLogger("hvac.extract")


class VisionModelClient:
    """Thin wrapper around a pydantic-ai Agent for one-shot vision calls.

    Key points:
        - Provider chosen by settings.VISION_PROVIDER ("openai" | "groq").
        - Instructions go in the agent's system instructions; the user turn
          carries a short task line plus the images.
        - Any provider exception propagates; retry policy belongs to callers.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.model = self._build_model()

    def _build_model(self):
        provider = (self.settings.VISION_PROVIDER or "openai").lower()
        if provider == "groq":
            if not self.settings.GROQ_API_KEY:
                raise RuntimeError("GROQ_API_KEY is required when VISION_PROVIDER=groq.")
            try:
                return GroqModel(
                    model_name=self.settings.VISION_MODEL,
                    provider=GroqProvider(api_key=self.settings.GROQ_API_KEY),
                )
            except Exception as e:
                raise RuntimeError(f"Failed to initialize Groq provider: {e}") from e
        if provider == "openai":
            if not self.settings.OPENAI_API_KEY:
                raise RuntimeError("OPENAI_API_KEY is required when VISION_PROVIDER=openai.")
            try:
                return OpenAIChatModel(
                    model_name=self.settings.VISION_MODEL,
                    provider=OpenAIProvider(
                        api_key=self.settings.OPENAI_API_KEY,
                        base_url=self.settings.OPENAI_BASE_URL or None,
                    ),
                )
            except Exception as e:
                raise RuntimeError(f"Failed to initialize OpenAI provider: {e}") from e
        raise RuntimeError(f"Unsupported VISION_PROVIDER: {provider}")

    def build_agent(self, instructions: str) -> Agent:
        if self.settings.DEBUG_EXTRACTION:
            log.debug("agent_build instructions_preview=%s", instructions[:220].replace("\n", " "))
        return Agent(self.model, instructions=instructions)

    async def run(
        self,
        instructions: str,
        images: Sequence[bytes] = (),
        *,
        prompt: str = "",
        max_tokens: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Execute one model call and return {"text", "latency_ms"}.

        images are JPEG bytes (see processing.prepare_image).
        """
        if self.settings.DEBUG_EXTRACTION:
            log.debug(
                "model_run start model=%s images=%d img_sizes=%s",
                self.settings.VISION_MODEL,
                len(images),
                [len(b) for b in images],
            )
        agent = self.build_agent(instructions)
        inputs: List[Any] = [prompt] if prompt else []
        for img in images:
            inputs.append(BinaryContent(data=img, media_type="image/jpeg"))
        model_settings: Dict[str, Any] = {"temperature": self.settings.MODEL_TEMPERATURE}
        if max_tokens:
            model_settings["max_tokens"] = max_tokens
        t0 = time.time()
        try:
            result = await agent.run(inputs, model_settings=model_settings)
        except Exception as e:
            log.error("model_run_exception model=%s error=%s", self.settings.VISION_MODEL, e, exc_info=True)
            raise
        latency_ms = int((time.time() - t0) * 1000)
        text = result.output if isinstance(result.output, str) else str(result.output)
        if self.settings.DEBUG_EXTRACTION:
            log.debug("model_run assistant_text_snippet=%s latency_ms=%d", text[:400].replace("\n", " "), latency_ms)
        if not text.strip():
            log.warning("model_run_empty_output model=%s latency_ms=%d", self.settings.VISION_MODEL, latency_ms)
        return {"text": text, "latency_ms": latency_ms}


@lru_cache
def get_vision_client() -> VisionModelClient:
    """FastAPI dependency: one client per process, built on first use."""
    return VisionModelClient(get_settings())
