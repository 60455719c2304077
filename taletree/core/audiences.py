"""
Audience tiers and their generation profiles.

Each profile calibrates prompts, token budgets and pacing for one reader
tier. The numbers come from production tuning; change them together with
the chapter prompt wording.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Audience(str, Enum):
    CHILD = "child"
    YOUNG_ADULT = "young_adult"
    ADULT = "adult"


@dataclass(frozen=True)
class AudienceProfile:
    audience: Audience
    age_range: str
    content_rules: str
    chapter_length: str
    art_direction: str
    ending_types: tuple[str, ...]
    min_chapters: int
    max_chapters: int
    max_tokens: int
    context_length: int
    temperature: float = 0.65
    opening_temperature: float = 0.6
    opening_extra_tokens: int = 400
    default_comic_style: str = "noir"
    default_voice: str = "Charon"
    default_voice_speed: float = 0.9
    default_tone: str = "dramatic"

    @property
    def default_ending_type(self) -> str:
        return self.ending_types[0]

    @property
    def requires_moderation(self) -> bool:
        return self.audience is Audience.CHILD

    @property
    def softens_image_prompts(self) -> bool:
        return self.audience is not Audience.CHILD

    def trim_context(self, text: str) -> str:
        """Keep the most recent `context_length` characters of running context."""
        if len(text) <= self.context_length:
            return text
        return text[-self.context_length :]


AUDIENCE_PROFILES: dict[Audience, AudienceProfile] = {
    Audience.CHILD: AudienceProfile(
        audience=Audience.CHILD,
        age_range="5-10",
        content_rules=(
            "Child-appropriate content only. No violence, fear, weapons, death, or mature themes. "
            "Simple vocabulary."
        ),
        chapter_length="2-3 SHORT paragraphs (4-5 sentences max)",
        art_direction="Warm, colorful children's book illustration",
        ending_types=("happy", "learning_moment", "neutral"),
        min_chapters=3,
        max_chapters=6,
        max_tokens=480,
        context_length=1200,
        default_comic_style="storybook",
        default_voice="Aoede",
        default_voice_speed=0.9,
        default_tone="warm and adventurous",
    ),
    Audience.YOUNG_ADULT: AudienceProfile(
        audience=Audience.YOUNG_ADULT,
        age_range="13-18",
        content_rules="Teen-appropriate content. Mild conflict and drama allowed. No explicit content.",
        chapter_length="3-4 paragraphs with more detail and emotional depth",
        art_direction="Dynamic, modern YA book cover style",
        ending_types=("triumphant", "bittersweet", "cliffhanger", "redemption"),
        min_chapters=4,
        max_chapters=10,
        max_tokens=700,
        context_length=2000,
        default_comic_style="manga",
        default_voice="Puck",
        default_voice_speed=0.95,
    ),
    Audience.ADULT: AudienceProfile(
        audience=Audience.ADULT,
        age_range="18+",
        content_rules=(
            "Adult content allowed. Complex themes, moral ambiguity, historical accuracy, political intrigue, "
            "war, consequences. No explicit sexual content."
        ),
        chapter_length="4-6 detailed paragraphs with rich narrative, dialogue, and character development",
        art_direction="Cinematic, realistic, dramatic illustration",
        ending_types=("triumphant", "tragic", "bittersweet", "ambiguous", "pyrrhic_victory", "redemption"),
        min_chapters=5,
        max_chapters=15,
        max_tokens=1200,
        context_length=3000,
        default_comic_style="noir",
        default_voice="Charon",
        default_voice_speed=0.9,
    ),
}


def get_audience_profile(audience: Audience | str) -> AudienceProfile:
    """Look up the profile for an audience tier.

    Raises:
        ValueError: If the tier is unknown.
    """
    return AUDIENCE_PROFILES[Audience(audience)]
