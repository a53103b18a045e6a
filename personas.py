"""
Persona catalog - the fixed set of characters the completion model roleplays.

Loaded once at import time, either from the built-in list or from the JSON file
named by PERSONAS_FILE, into a read-only mapping keyed by persona id.
"""

import json
import logging
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Optional

from pydantic import BaseModel, ConfigDict

from config.settings import settings

logger = logging.getLogger(__name__)

BIBLICAL_PROMPT_TEMPLATE = """
You are an AI representation inspired by the biblical figure: {name}.

GUIDELINES:
- You are NOT the real {name}, nor a deity. You are an AI roleplay assistant.
- You must ALWAYS acknowledge you are an AI representation if asked.
- Speak in the tone, style, and teachings associated with this biblical figure.
- Reference relevant scripture when appropriate.
- Do NOT claim divine authority.
- Do NOT give prophecy or supernatural commands.
- Use the entire Bible (Old & New Testament) as your stylistic reference.
- Offer wisdom, guidance, storytelling, and historical/theological context.

Your goal is to provide an immersive but safe biblical roleplay experience.
"""


class Persona(BaseModel):
    """Static catalog entry. Instances are frozen."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    descriptor: str = ""
    avatar: Optional[str] = None
    prompt_template: str = BIBLICAL_PROMPT_TEMPLATE

    def system_prompt(self) -> str:
        return self.prompt_template.replace("{name}", self.name)

    def public_view(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "descriptor": self.descriptor,
            "avatar": self.avatar,
        }


DEFAULT_PERSONAS = [
    Persona(id="moses", name="Moses", descriptor="Lawgiver and leader of the Exodus", avatar="/avatars/moses.png"),
    Persona(id="david", name="King David", descriptor="Shepherd, psalmist and king of Israel", avatar="/avatars/david.png"),
    Persona(id="solomon", name="King Solomon", descriptor="Builder of the Temple, teacher of wisdom", avatar="/avatars/solomon.png"),
    Persona(id="elijah", name="Elijah", descriptor="Prophet of Mount Carmel", avatar="/avatars/elijah.png"),
    Persona(id="ruth", name="Ruth", descriptor="Loyal daughter-in-law of Naomi", avatar="/avatars/ruth.png"),
    Persona(id="esther", name="Queen Esther", descriptor="Queen who spoke up for her people", avatar="/avatars/esther.png"),
    Persona(id="mary", name="Mary, Mother of Jesus", descriptor="Mother of Jesus of Nazareth", avatar="/avatars/mary.png"),
    Persona(id="peter", name="Peter", descriptor="Fisherman and apostle", avatar="/avatars/peter.png"),
    Persona(id="paul", name="Paul the Apostle", descriptor="Missionary and letter writer", avatar="/avatars/paul.png"),
    Persona(id="john", name="John the Apostle", descriptor="Beloved disciple and evangelist", avatar="/avatars/john.png"),
]


def load_catalog(path: Optional[str] = None) -> Mapping[str, Persona]:
    """
    Build the read-only persona lookup.

    Args:
        path: Optional JSON file holding a list of persona objects. Falls back to
            the built-in catalog when not given.

    Raises:
        ValueError: If the file lists the same persona id twice
    """
    if path:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        personas = [Persona(**item) for item in raw]
        logger.info(f"Loaded {len(personas)} personas from {path}")
    else:
        personas = DEFAULT_PERSONAS

    catalog = {}
    for persona in personas:
        if persona.id in catalog:
            raise ValueError(f"Duplicate persona id in catalog: {persona.id}")
        catalog[persona.id] = persona
    return MappingProxyType(catalog)


PERSONAS: Mapping[str, Persona] = load_catalog(settings.personas_file)


def get_persona(persona_id: str) -> Optional[Persona]:
    return PERSONAS.get(persona_id)
