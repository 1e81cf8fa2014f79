"""Resolve which companion persona, instructions and model a chat turn uses."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy import update

from ..config import AppSettings
from ..errors import Forbidden, NotFound, ValidationFailed
from ..storage import Persona, get_db_manager

SUPPORTED_PROVIDER = "openai"


@dataclass
class PersonaConfig:
    """The business configuration for one chat turn."""

    agent_name: str
    instructions: str
    model: str
    temperature: float
    persona_id: Optional[str] = None
    last_response_id: Optional[str] = None

    @property
    def stateful(self) -> bool:
        """Persona turns keep provider-side state, chained through ``last_response_id``."""
        return self.persona_id is not None

    def agent_config(self) -> dict[str, object]:
        return {
            "provider": SUPPORTED_PROVIDER,
            "persona_id": self.persona_id,
            "model": self.model,
            "temperature": self.temperature,
        }


def build_persona_instructions(persona: Persona) -> str:
    name = persona.display_name or persona.name
    parts = [f"You are {name}, a KINKSTER character in the KINK IT universe."]
    if persona.bio:
        parts.append(f"Bio: {persona.bio}")
    if persona.archetype:
        parts.append(f"Archetype: {persona.archetype}")
    if persona.personality_traits:
        parts.append(f"Personality Traits: {', '.join(persona.personality_traits)}")
    if persona.role_preferences:
        parts.append(f"Role Preferences: {', '.join(persona.role_preferences)}")
    parts.append(
        f"Always respond as {name} would, using their personality and motivations. "
        "Stay in character, and respect the user's stated limits when discussing topics."
    )
    return "\n\n".join(parts)


def default_persona(settings: AppSettings) -> PersonaConfig:
    companion = settings.companion
    return PersonaConfig(
        agent_name=companion.name,
        instructions=companion.instructions,
        model=companion.model,
        temperature=companion.temperature,
    )


async def resolve_persona(persona_id: Optional[str], user_id: str, settings: AppSettings) -> PersonaConfig:
    """Load the persona the caller asked for, or the built-in companion.

    Raises :class:`NotFound` for unknown ids, :class:`Forbidden` when the persona
    belongs to another user and is not a system persona, and
    :class:`ValidationFailed` when it is served by a provider this relay does
    not speak.
    """
    if not persona_id:
        return default_persona(settings)

    db = await get_db_manager()
    async with db.session() as session:
        persona = await session.get(Persona, persona_id)
    if persona is None:
        raise NotFound("Kinkster not found")
    if persona.user_id != user_id and not persona.is_system:
        raise Forbidden("Not authorized to chat with this Kinkster")
    provider = persona.provider or SUPPORTED_PROVIDER
    if provider != SUPPORTED_PROVIDER:
        raise ValidationFailed(f"Kinkster uses {provider} provider, which this endpoint does not support")

    return PersonaConfig(
        agent_name=persona.display_name or persona.name,
        instructions=persona.instructions or build_persona_instructions(persona),
        model=persona.model or settings.llm.model,
        temperature=settings.companion.temperature,
        persona_id=persona.id,
        last_response_id=persona.last_response_id,
    )


async def record_response_id(persona_id: str, response_id: str) -> None:
    db = await get_db_manager()
    async with db.session() as session:
        await session.execute(
            update(Persona).where(Persona.id == persona_id).values(last_response_id=response_id)
        )
