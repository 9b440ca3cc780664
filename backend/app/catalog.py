"""Static reference data: styles, room types, transform modes, credit packs.

Seeded by hand; read-only at runtime. Prompt templates insist on keeping
the room's architecture intact because the image model works img2img on
the user's photo.
"""

from __future__ import annotations

from dataclasses import dataclass

from app.config import settings
from app.errors import ValidationError

GENERATION_CREDIT_COST = 1


@dataclass(frozen=True)
class Style:
    slug: str
    name: str
    description: str
    prompt_description: str
    credit_cost: int = GENERATION_CREDIT_COST


@dataclass(frozen=True)
class RoomType:
    slug: str
    name: str
    prompt_description: str


@dataclass(frozen=True)
class CreditPack:
    id: str
    credits: int
    price_cents: int
    price_display: str
    popular: bool = False

    @property
    def price_id(self) -> str:
        return getattr(settings, f"stripe_price_{self.id}", "")


STYLES: tuple[Style, ...] = (
    Style(
        "moderne",
        "Moderne",
        "Élégance contemporaine sophistiquée",
        "modern minimalist design with clean lines, neutral colors, contemporary furniture",
    ),
    Style(
        "minimaliste",
        "Minimaliste",
        "Simplicité scandinave épurée",
        "ultra minimalist design with essential furniture only, monochrome palette",
    ),
    Style(
        "boheme",
        "Bohème",
        "Chaleur éclectique globe-trotter",
        "bohemian design with layered textiles, plants, warm colors, eclectic decor",
    ),
    Style(
        "industriel",
        "Industriel",
        "Loft urbain brut et raffiné",
        "industrial loft design with exposed brick, metal fixtures, raw materials",
    ),
    Style(
        "classique",
        "Classique",
        "Élégance traditionnelle intemporelle",
        "classic French design with ornate details, rich fabrics, traditional elegance",
    ),
    Style(
        "japandi",
        "Japandi",
        "Zen japonais & cocooning nordique",
        "Japandi design combining Japanese minimalism with Scandinavian warmth",
    ),
    Style(
        "midcentury",
        "Mid-Century",
        "Rétro iconique années 50-60",
        "mid-century modern with organic shapes, teak wood, retro colors",
    ),
    Style(
        "coastal",
        "Coastal",
        "Bord de mer relaxant et lumineux",
        "coastal design with light blues, whites, natural textures, beachy atmosphere",
    ),
    Style(
        "farmhouse",
        "Farmhouse",
        "Charme rustique contemporain",
        "modern farmhouse with rustic wood, shiplap, cozy textiles, country charm",
    ),
    Style(
        "artdeco",
        "Art Déco",
        "Glamour opulent années 1920",
        "Art Deco design with geometric patterns, gold accents, glamorous atmosphere",
    ),
)

ROOM_TYPES: tuple[RoomType, ...] = (
    RoomType("salon", "Salon", "living room"),
    RoomType("chambre", "Chambre", "bedroom"),
    RoomType("chambre-enfant", "Chambre d'enfant", "children bedroom, kids room, playful decor"),
    RoomType("cuisine", "Cuisine", "kitchen"),
    RoomType("salle-de-bain", "Salle de bain", "bathroom"),
    RoomType("bureau", "Bureau", "home office"),
    RoomType("salle-a-manger", "Salle à manger", "dining room"),
    RoomType("entree", "Entrée", "entryway"),
    RoomType("terrasse", "Terrasse", "terrace"),
)

CREDIT_PACKS: tuple[CreditPack, ...] = (
    CreditPack("pack_10", 10, 990, "9,90 €"),
    CreditPack("pack_25", 25, 1990, "19,90 €", popular=True),
    CreditPack("pack_50", 50, 3490, "34,90 €"),
    CreditPack("pack_100", 100, 5990, "59,90 €"),
)

_ARCHITECTURE_CONSTRAINTS = (
    "ARCHITECTURE MUST STAY IDENTICAL: same walls, same windows and doors in the same "
    "positions, same ceiling height, same room proportions, same camera angle and perspective."
)

_MODE_TEMPLATES: dict[str, str] = {
    "full_redesign": (
        "TASK: COMPLETE INTERIOR REDESIGN\n\n"
        "This is a {room}. Complete transformation to {style} style.\n\n"
        "{constraints}\n\n"
        "Replace all furniture with new {style} pieces, new wall colors and textures, new "
        "lighting fixtures, complete decor: rugs, art, plants, accessories.\n\n"
        "Professional interior design photography, {style}, photorealistic."
    ),
    "keep_layout": (
        "TASK: STYLE CHANGE WITH SAME LAYOUT\n\n"
        "This is a {room}. Transform to {style} style while keeping every piece of furniture "
        "in the exact same position.\n\n"
        "{constraints}\n\n"
        "Replace each piece with its {style} equivalent at the same location, update wall "
        "colors and add matching decor. Only the style changes, not the arrangement."
    ),
    "decor_only": (
        "TASK: DECOR REFRESH ONLY\n\n"
        "This is a {room}. Keep all furniture exactly as it is.\n\n"
        "{constraints}\n\n"
        "Only update walls, cushions, throws, plants, wall art, rugs, curtains and accessories "
        "in {style} style."
    ),
    "rearrange": (
        "TASK: FURNITURE REARRANGEMENT\n\n"
        "This is a {room}. Keep every piece of furniture identical in style, color and "
        "material; only move pieces to create a fresh, better flowing layout.\n\n"
        "{constraints}\n\n"
        "Professional photography, same lighting atmosphere as the original."
    ),
}

TRANSFORM_MODES: frozenset[str] = frozenset(_MODE_TEMPLATES)


class Catalog:
    """Lookup and prompt rendering over the static reference data."""

    def __init__(
        self,
        styles: tuple[Style, ...] = STYLES,
        room_types: tuple[RoomType, ...] = ROOM_TYPES,
        packs: tuple[CreditPack, ...] = CREDIT_PACKS,
    ) -> None:
        self._styles = {s.slug: s for s in styles}
        self._rooms = {r.slug: r for r in room_types}
        self._packs = {p.id: p for p in packs}

    @property
    def packs(self) -> list[CreditPack]:
        return list(self._packs.values())

    def style(self, slug: str) -> Style:
        try:
            return self._styles[slug]
        except KeyError:
            raise ValidationError(f"Unknown style: {slug}") from None

    def room(self, slug: str) -> RoomType:
        try:
            return self._rooms[slug]
        except KeyError:
            raise ValidationError(f"Unknown room type: {slug}") from None

    def pack(self, pack_id: str) -> CreditPack:
        try:
            return self._packs[pack_id]
        except KeyError:
            raise ValidationError(f"Unknown credit pack: {pack_id}") from None

    def render_prompt(self, style: Style, room: RoomType, transform_mode: str) -> str:
        template = _MODE_TEMPLATES.get(transform_mode)
        if template is None:
            raise ValidationError(f"Unknown transform mode: {transform_mode}")
        return template.format(
            room=room.prompt_description,
            style=style.prompt_description,
            constraints=_ARCHITECTURE_CONSTRAINTS,
        )


CATALOG = Catalog()
