"""One-shot sub-agent completions for expert delegation."""

from __future__ import annotations

import logging

from argenteia.db import Database
from argenteia.llm.resolver import ModelResolver

LOGGER = logging.getLogger(__name__)

EMPTY_EXPERT_REPLY = "El experto no devolvió ninguna respuesta."


class ExpertRunner:
    """Runs a task against an expert's own model, prompt and temperature."""

    def __init__(self, db: Database, resolver: ModelResolver, max_tokens: int | None = None) -> None:
        self._db = db
        self._resolver = resolver
        self._max_tokens = max_tokens

    async def run(
        self,
        expert_name: str,
        task: str,
        caller: str | None = None,
        allowed: list[str] | None = None,
    ) -> str:
        """Return the expert's answer.

        ``caller`` is the profile delegating the task and ``allowed`` its expert
        allow-list (None means unrestricted).

        Raises:
            PermissionError: the target is the caller itself or is not allowed.
            LookupError: no expert profile named ``expert_name``.
            ProviderError / NoCredentials: the expert's model could not answer.
        """
        if caller is not None and expert_name == caller:
            raise PermissionError(f'el experto "{expert_name}" no puede delegarse tareas a sí mismo')
        if allowed is not None and expert_name not in allowed:
            raise PermissionError(f'el experto "{expert_name}" no está permitido desde "{caller}"')
        expert = self._db.get_expert(expert_name)
        if expert is None:
            raise LookupError(f'experto "{expert_name}" no encontrado')

        LOGGER.info("Delegating to expert %s (%s)", expert.name, expert.model)
        client = self._resolver.create_client(expert.model)
        response = await client.generate(
            [
                {"role": "system", "content": expert.system_prompt},
                {"role": "user", "content": task},
            ],
            temperature=expert.temperature,
            max_tokens=self._max_tokens,
        )
        return response.content or EMPTY_EXPERT_REPLY
