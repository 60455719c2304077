from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ComicStylePreset:
    style: str
    color_palette: str
    line_work: str
    influences: tuple[str, ...]
    lighting: str
    mood: str
    voice: str
    voice_speed: float

    def style_prompt_prefix(self) -> str:
        """Prefix prepended to every illustration prompt for this style."""
        return (
            f"A {self.style} panel. {self.color_palette}. {self.line_work}. "
            f"{self.lighting}. Style of {self.influences[0]}."
        )

    def as_art_style(self) -> dict[str, object]:
        return {
            "style": self.style,
            "colorPalette": self.color_palette,
            "lineWork": self.line_work,
            "influences": list(self.influences),
            "lighting": self.lighting,
            "mood": self.mood,
        }


COMIC_STYLE_PRESETS: dict[str, ComicStylePreset] = {
    "noir": ComicStylePreset(
        style="noir graphic novel",
        color_palette="high contrast black and white with selective red accents",
        line_work="heavy ink shadows, dramatic silhouettes",
        influences=("Frank Miller", "Sin City", "Mike Mignola"),
        lighting="harsh chiaroscuro, venetian blind shadows",
        mood="gritty, atmospheric, morally ambiguous",
        voice="Charon",
        voice_speed=0.85,
    ),
    "manga": ComicStylePreset(
        style="seinen manga",
        color_palette="clean blacks and whites with screentone shading",
        line_work="precise lineart, dynamic speed lines",
        influences=("Takehiko Inoue", "Naoki Urasawa", "Kentaro Miura"),
        lighting="dramatic with high contrast action scenes",
        mood="intense, emotional, detailed",
        voice="Aoede",
        voice_speed=0.95,
    ),
    "western": ComicStylePreset(
        style="modern American comic",
        color_palette="rich, saturated colors with dramatic shadows",
        line_work="bold outlines, detailed crosshatching",
        influences=("Alex Ross", "Jim Lee", "David Finch"),
        lighting="cinematic, dynamic rim lighting",
        mood="heroic, epic, intense",
        voice="Puck",
        voice_speed=0.9,
    ),
    "cyberpunk": ComicStylePreset(
        style="cyberpunk graphic novel",
        color_palette="neon pinks, blues, and purples against dark backgrounds",
        line_work="sharp geometric lines, digital aesthetic",
        influences=("Masamune Shirow", "Josan Gonzalez", "Blade Runner"),
        lighting="neon glow, holographic reflections",
        mood="dystopian, tech-noir, atmospheric",
        voice="Fenrir",
        voice_speed=0.95,
    ),
    "horror": ComicStylePreset(
        style="horror comic",
        color_palette="desaturated with sickly greens and blood reds",
        line_work="scratchy, unsettling linework",
        influences=("Junji Ito", "Bernie Wrightson", "Emily Carroll"),
        lighting="oppressive shadows, unnatural light sources",
        mood="dread, unease, visceral",
        voice="Charon",
        voice_speed=0.8,
    ),
    "fantasy": ComicStylePreset(
        style="dark fantasy graphic novel",
        color_palette="earthy tones with magical color accents",
        line_work="detailed, painterly quality",
        influences=("Frazetta", "Moebius", "Yoshitaka Amano"),
        lighting="mystical, ethereal glow effects",
        mood="epic, mysterious, otherworldly",
        voice="Leda",
        voice_speed=0.9,
    ),
    # children's tier default
    "storybook": ComicStylePreset(
        style="colorful picture book illustration",
        color_palette="bright, warm colors with soft gradients",
        line_work="bold friendly outlines, rounded shapes",
        influences=("Pixar concept art", "Oliver Jeffers", "Jon Klassen"),
        lighting="soft daylight, gentle glow",
        mood="playful, whimsical, reassuring",
        voice="Aoede",
        voice_speed=0.9,
    ),
}


def has_comic_style(style_id: str | None) -> bool:
    return bool(style_id) and style_id in COMIC_STYLE_PRESETS


def get_comic_style(style_id: str | None, default: str = "noir") -> ComicStylePreset:
    """Return the preset for `style_id`, falling back to `default`."""
    if style_id and style_id in COMIC_STYLE_PRESETS:
        return COMIC_STYLE_PRESETS[style_id]
    return COMIC_STYLE_PRESETS[default]
