import copy
import json

import pytest

from taletree.core.audiences import Audience
from taletree.core.comic_styles import get_comic_style
from taletree.core.exceptions import InvalidBibleError, ParseError
from taletree.pipeline.bible import bible_from_row, bible_row_values, finalize_bible, generate_bible
from taletree.db.models import StoryBible
from tests.fakes import BIBLE, FakeTextGenerator


def test_missing_prompt_map_entries_come_from_appearance():
    bible = finalize_bible(copy.deepcopy(BIBLE))
    assert bible.character_prompt_map["Mira"] == "girl with curly red hair in a yellow raincoat"
    assert bible.character_prompt_map["Oswin"] == "elderly keeper, white beard, navy wool coat"


def test_null_prompt_map_is_rebuilt():
    data = copy.deepcopy(BIBLE)
    data["characterPromptMap"] = None
    bible = finalize_bible(data)
    assert set(bible.character_prompt_map) == {"Mira", "Oswin"}


def test_no_characters_is_rejected():
    data = copy.deepcopy(BIBLE)
    data["characters"] = []
    with pytest.raises(InvalidBibleError):
        finalize_bible(data)


def test_empty_style_prefix_is_rejected():
    data = copy.deepcopy(BIBLE)
    data["stylePromptPrefix"] = "   "
    with pytest.raises(InvalidBibleError):
        finalize_bible(data)


def test_empty_art_style_uses_preset():
    data = copy.deepcopy(BIBLE)
    data["artStyle"] = {}
    preset = get_comic_style("noir")
    bible = finalize_bible(data, fallback_art_style=preset.as_art_style())
    assert bible.art_style.style == preset.style
    assert bible.art_style.influences == list(preset.influences)


def test_row_round_trip():
    bible = finalize_bible(copy.deepcopy(BIBLE))
    row = StoryBible(**bible_row_values(bible))
    restored = bible_from_row(row)
    assert restored.character_names() == ["Mira", "Oswin"]
    assert restored.style_prompt_prefix == bible.style_prompt_prefix


@pytest.mark.anyio
async def test_generate_bible_uses_style_preset():
    generator = FakeTextGenerator()
    bible = await generate_bible("A lantern drifts out to sea", Audience.YOUNG_ADULT, "cyberpunk", text_generator=generator)

    assert bible.title == "The Lantern Keeper"
    prompt = generator.calls[0]["user_prompt"]
    assert "A lantern drifts out to sea" in prompt
    assert get_comic_style("cyberpunk").style_prompt_prefix() in prompt
    assert "13-18" in prompt


@pytest.mark.anyio
async def test_generate_bible_defaults_style_per_audience():
    generator = FakeTextGenerator()
    await generate_bible("A lost kitten", Audience.CHILD, text_generator=generator)
    assert get_comic_style("storybook").style_prompt_prefix() in generator.calls[0]["user_prompt"]


@pytest.mark.anyio
async def test_generate_bible_accepts_prose_wrapped_json():
    generator = FakeTextGenerator(bible="Here is your bible:\n" + json.dumps(BIBLE) + "\nGood luck!")
    bible = await generate_bible("premise", Audience.ADULT, text_generator=generator)
    assert len(bible.characters) == 2


@pytest.mark.anyio
async def test_generate_bible_unparseable():
    generator = FakeTextGenerator(bible="I'd rather not.")
    with pytest.raises(ParseError):
        await generate_bible("premise", Audience.ADULT, text_generator=generator)
