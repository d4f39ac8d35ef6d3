"""System prompt composition."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from argenteia.models import ExpertProfile, Fact, UserProfile

LOGGER = logging.getLogger(__name__)

ONBOARDING_BLOCK = (
    "## Usuario nuevo\n"
    "Todavía no conoces a este usuario. Preséntate brevemente, pregúntale cómo se llama "
    "y en qué zona horaria vive, y guarda sus datos con la herramienta update_profile."
)

CHANNEL_BLOCKS = {
    "signal": (
        "## Formato de respuesta\n"
        "Estás respondiendo por un chat de mensajería. Usa texto plano, sin Markdown, "
        "encabezados ni bloques de código. Sé breve."
    ),
    "web": (
        "## Formato de respuesta\n"
        "Estás respondiendo en la interfaz web. Puedes usar Markdown (listas, negritas, "
        "tablas y bloques de código) cuando ayude a la lectura."
    ),
}


@dataclass(slots=True)
class Skill:
    """Extra instructions appended to the prompt when their tools are enabled."""

    name: str
    body: str
    requires: tuple[str, ...] = ()


def parse_skill(name: str, text: str) -> Skill:
    """Split optional ``---`` front matter (``requires: a, b``) from the body."""

    text = text.strip()
    requires: tuple[str, ...] = ()
    if text.startswith("---"):
        header, sep, body = text[3:].partition("\n---")
        if sep:
            text = body.strip()
            for line in header.splitlines():
                key, _, value = line.partition(":")
                if key.strip().lower() == "requires":
                    requires = tuple(t.strip() for t in value.split(",") if t.strip())
    return Skill(name=name, body=text, requires=requires)


def load_skills(skills_dir: Path) -> list[Skill]:
    """Load ``*.md`` skills sorted by file name; a missing directory yields none."""

    if not skills_dir.is_dir():
        return []
    skills: list[Skill] = []
    for path in sorted(skills_dir.glob("*.md")):
        skill = parse_skill(path.stem, path.read_text(encoding="utf-8"))
        if skill.body:
            skills.append(skill)
    LOGGER.info("Loaded %d skill(s) from %s", len(skills), skills_dir)
    return skills


class SystemPromptBuilder:
    """Composes base instructions with skill, identity, peer and channel blocks."""

    def __init__(
        self,
        skills: list[Skill] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._skills = skills or []
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def build(
        self,
        base: str,
        tool_names: Iterable[str],
        user: UserProfile | None = None,
        facts: list[Fact] | None = None,
        peers: list[ExpertProfile] | None = None,
        origin: str = "web",
    ) -> str:
        enabled = set(tool_names)
        parts = [base.strip()]

        skills = [s for s in self._skills if all(t in enabled for t in s.requires)]
        if skills:
            parts.append("# Skills adicionales\n\n" + "\n\n---\n\n".join(s.body for s in skills))

        parts.append(self._identity_block(user, facts or []))

        if peers and "call_expert" in enabled:
            parts.append(_peers_block(peers))

        parts.append(CHANNEL_BLOCKS.get(origin, CHANNEL_BLOCKS["web"]))
        return "\n\n".join(parts)

    def _identity_block(self, user: UserProfile | None, facts: list[Fact]) -> str:
        if user is None or not user.name:
            return ONBOARDING_BLOCK

        try:
            tz = ZoneInfo(user.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            tz = ZoneInfo("UTC")
        local_time = self._clock().astimezone(tz).strftime("%Y-%m-%d %H:%M")
        lines = [
            "## Usuario",
            f"- Nombre: {user.name}",
            f"- Zona horaria: {user.timezone}",
            f"- Hora local: {local_time}",
        ]
        if facts:
            lines.append("\nDatos que recuerdas sobre el usuario:")
            lines.extend(f"- {f.fact}" for f in facts)
        return "\n".join(lines)


def _peers_block(peers: list[ExpertProfile]) -> str:
    lines = [
        "## Expertos disponibles",
        "Puedes delegar tareas especializadas con la herramienta call_expert:",
    ]
    for peer in peers:
        summary = peer.system_prompt.strip().splitlines()[0][:120] if peer.system_prompt.strip() else ""
        lines.append(f"- {peer.name} ({peer.model}): {summary}")
    return "\n".join(lines)
