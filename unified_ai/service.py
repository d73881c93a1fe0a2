"""Public call surface.

``AIService`` is what applications use: it owns an ``AIOrchestrator`` bound
to an ``AIContext`` and adds a few conveniences on top of ``complete``.

Example::

    context = AIContext.from_settings()
    service = AIService(context)
    answer = await service.ask("Summarize this paragraph ...")
    await service.aclose()
"""

import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .context import AIContext
from .errors import UnsupportedOperationError
from .orchestrator import AIOrchestrator, RequestOptions
from .schemas import (
    ImageGenerationRequest,
    ImageGenerationResponse,
    OrchestratedResponse,
    UnifiedMessage,
    UnifiedRequest,
)
from .streaming import ChunkStream

logger = logging.getLogger(__name__)

_TEMPLATE_PATTERN = re.compile(r"\{\{\s*([A-Za-z0-9_\-]+)\.output\s*\}\}")


def render_template(template: str, outputs: Mapping[str, str]) -> str:
    """Replace ``{{step_name.output}}`` references with earlier step outputs.

    Raises:
        KeyError: If a reference names a step that has not run.
    """
    def substitute(match: re.Match) -> str:
        name = match.group(1)
        if name not in outputs:
            raise KeyError(f"Unknown workflow step referenced: {name}")
        return outputs[name]

    return _TEMPLATE_PATTERN.sub(substitute, template)


class Conversation:
    """A multi-turn exchange that keeps its own message history."""

    def __init__(self, service: "AIService", system: Optional[str] = None, options: Optional[RequestOptions] = None):
        self._service = service
        self._system = system
        self._options = options
        self._history: List[UnifiedMessage] = []
        self.reset()

    @property
    def history(self) -> List[UnifiedMessage]:
        return list(self._history)

    def reset(self) -> None:
        """Forget every turn, keeping the system prompt."""
        self._history = []
        if self._system:
            self._history.append(UnifiedMessage(role="system", content=self._system))

    async def send(self, text: str, **params: Any) -> str:
        """Send a user turn and return the assistant's reply.

        The history only grows when the call succeeds.
        """
        messages = self._history + [UnifiedMessage(role="user", content=text)]
        response = await self._service.complete(
            UnifiedRequest(messages=messages, **params),
            self._options,
        )
        reply = response.choices[0].message if response.choices else UnifiedMessage(role="assistant", content="")
        self._history = messages + [reply]
        return reply.text()


class AIService:
    """High-level entry point over the orchestrator."""

    def __init__(self, context: AIContext):
        self.context = context
        self.orchestrator = AIOrchestrator(context)

    async def complete(
        self,
        request: UnifiedRequest,
        options: Optional[RequestOptions] = None,
    ) -> OrchestratedResponse:
        """Complete ``request`` with routing, fallback and caching."""
        return await self.orchestrator.execute(request, options)

    def stream(self, request: UnifiedRequest, options: Optional[RequestOptions] = None) -> ChunkStream:
        """Stream ``request``; see ``AIOrchestrator.stream``."""
        return self.orchestrator.stream(request, options)

    def estimate_cost(self, request: UnifiedRequest, options: Optional[RequestOptions] = None) -> float:
        return self.orchestrator.estimate_cost(request, options)

    async def generate_images(
        self,
        request: ImageGenerationRequest,
        options: Optional[RequestOptions] = None,
    ) -> ImageGenerationResponse:
        """Generate images on the explicit provider or the first capable one.

        Calls go through the same breaker, retry and deadline as completions.

        Raises:
            UnsupportedOperationError: If no usable provider generates images.
        """
        if options is not None and options.provider is not None:
            adapter = self.context.registry.resolve(options.provider)
            if not adapter.supports_image_generation:
                raise UnsupportedOperationError("generate_images", adapter.provider_name)
            return await adapter.generate_images(request)

        for name in self.context.available_providers():
            adapter = self.context.registry.resolve(self.context.provider_config(name))
            if adapter.supports_image_generation:
                logger.info(f"Generating {request.n} image(s) with {name}")
                return await adapter.generate_images(request)
        raise UnsupportedOperationError("generate_images")

    async def health_check(self) -> Dict[str, Dict[str, Any]]:
        """Probe every registered provider; never raises."""
        return await self.context.registry.health_check_all(self.context.credentials)

    async def ask(
        self,
        message: str,
        system: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        options: Optional[RequestOptions] = None,
    ) -> str:
        """One-shot prompt returning only the answer text."""
        messages = []
        if system:
            messages.append(UnifiedMessage(role="system", content=system))
        messages.append(UnifiedMessage(role="user", content=message))
        response = await self.complete(
            UnifiedRequest(messages=messages, temperature=temperature, max_tokens=max_tokens),
            options,
        )
        return response.content

    async def workflow(self, steps: Sequence[Mapping[str, Any]]) -> Dict[str, str]:
        """Run prompts in order, feeding earlier outputs into later prompts.

        Each step is a mapping with ``name`` and ``prompt`` and optionally
        ``system``, ``temperature``, ``max_tokens`` and ``options``. A prompt
        may reference an earlier step as ``{{step_name.output}}``.

        Args:
            steps: Workflow steps in execution order.

        Returns:
            Output text per step name, in execution order.

        Raises:
            ValueError: If a step is missing its name or prompt, or a name repeats.
            KeyError: If a prompt references a step that has not run yet.
        """
        outputs: Dict[str, str] = {}
        for index, step in enumerate(steps):
            name = step.get("name")
            prompt = step.get("prompt")
            if not name or not prompt:
                raise ValueError(f"Workflow step {index} needs a name and a prompt")
            if name in outputs:
                raise ValueError(f"Duplicate workflow step name: {name}")

            logger.info(f"Running workflow step {name}")
            outputs[name] = await self.ask(
                render_template(prompt, outputs),
                system=render_template(step["system"], outputs) if step.get("system") else None,
                temperature=step.get("temperature"),
                max_tokens=step.get("max_tokens"),
                options=step.get("options"),
            )
        return outputs

    def conversation(self, system: Optional[str] = None, options: Optional[RequestOptions] = None) -> Conversation:
        return Conversation(self, system=system, options=options)

    async def aclose(self) -> None:
        await self.context.aclose()
