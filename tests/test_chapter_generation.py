"""Tests for chapter validation, pacing overrides and retries."""

import json

import pytest

from taletree.core.audiences import Audience, get_audience_profile
from taletree.core.exceptions import GenerationError, InsufficientChoicesError, ParseError
from taletree.core.settings import settings
from taletree.pipeline.chapter import Pacing, build_chapter, generate_chapter, pacing_for
from taletree.pipeline.schemas import BibleDraft, ChapterAdapter, ContinuingChapter, EndingChapter
from tests.fakes import BIBLE, FakeTextGenerator, chapter_json

CHILD = get_audience_profile(Audience.CHILD)
ADULT = get_audience_profile(Audience.ADULT)


def _data(**kwargs) -> dict:
    return json.loads(chapter_json(**kwargs))


class TestPacing:
    @pytest.mark.parametrize(
        ("depth", "expected"),
        [
            (0, Pacing.FORBID_ENDING),
            (2, Pacing.FORBID_ENDING),
            (3, Pacing.DEVELOP),
            (4, Pacing.ENCOURAGE_ENDING),
            (5, Pacing.ENCOURAGE_ENDING),
            (6, Pacing.REQUIRE_ENDING),
            (9, Pacing.REQUIRE_ENDING),
        ],
    )
    def test_child_window(self, depth, expected):
        assert pacing_for(depth, CHILD) is expected

    def test_adult_develops_mid_story(self):
        assert pacing_for(7, ADULT) is Pacing.DEVELOP


class TestBuildChapter:
    def test_continuing_chapter(self):
        chapter = build_chapter(_data(choices=3), depth=3, profile=CHILD)
        assert isinstance(chapter, ContinuingChapter)
        assert [c.text for c in chapter.choices] == ["Option 1", "Option 2", "Option 3"]
        assert [c.generation_priority for c in chapter.choices] == [1, 2, 3]

    def test_early_ending_with_choices_is_overridden(self):
        # child tier, depth 1: the model tried to end the story
        chapter = build_chapter(_data(is_ending=True, ending_type="happy", choices=2), depth=1, profile=CHILD)
        assert isinstance(chapter, ContinuingChapter)
        assert not chapter.is_ending
        assert len(chapter.choices) == 2

    def test_early_ending_without_choices_is_rejected(self):
        with pytest.raises(InsufficientChoicesError) as exc_info:
            build_chapter(_data(is_ending=True, ending_type="happy", choices=0), depth=1, profile=CHILD)
        assert exc_info.value.choice_count == 0

    def test_late_continuation_is_forced_to_end(self):
        chapter = build_chapter(_data(choices=2), depth=6, profile=CHILD)
        assert isinstance(chapter, EndingChapter)
        assert chapter.ending_type == CHILD.default_ending_type
        assert chapter.choices == []

    def test_ending_inside_window_keeps_model_type(self):
        chapter = build_chapter(_data(is_ending=True, ending_type="learning_moment", choices=0), depth=4, profile=CHILD)
        assert isinstance(chapter, EndingChapter)
        assert chapter.ending_type == "learning_moment"

    def test_ending_without_type_gets_default(self):
        chapter = build_chapter(_data(is_ending=True, choices=0), depth=4, profile=CHILD)
        assert chapter.ending_type == "happy"

    def test_ending_type_outside_audience_is_replaced(self):
        # "tragic" is an adult ending; child stories fall back to their default
        chapter = build_chapter(_data(is_ending=True, ending_type="tragic", choices=0), depth=4, profile=CHILD)
        assert chapter.ending_type == "happy"

    def test_free_text_ending_type_is_replaced(self):
        tag = "a long and winding bittersweet farewell to the sea"
        chapter = build_chapter(_data(is_ending=True, ending_type=tag, choices=0), depth=4, profile=CHILD)
        assert chapter.ending_type == CHILD.default_ending_type
        assert len(chapter.ending_type) <= 32

    def test_ending_type_casing_is_normalized(self):
        chapter = build_chapter(
            _data(is_ending=True, ending_type="Pyrrhic Victory", choices=0), depth=8, profile=ADULT
        )
        assert chapter.ending_type == "pyrrhic_victory"

    def test_single_choice_is_insufficient(self):
        with pytest.raises(InsufficientChoicesError):
            build_chapter(_data(choices=1), depth=3, profile=CHILD)

    def test_blank_choices_do_not_count(self):
        data = _data(choices=0)
        data["choices"] = [{"text": "Go left"}, {"text": "   "}]
        with pytest.raises(InsufficientChoicesError):
            build_chapter(data, depth=3, profile=CHILD)

    def test_extra_choices_are_truncated(self):
        chapter = build_chapter(_data(choices=5), depth=3, profile=CHILD)
        assert len(chapter.choices) == 3

    def test_string_choices_are_accepted(self):
        data = _data(choices=0)
        data["choices"] = ["Open the door", "Climb the tower"]
        chapter = build_chapter(data, depth=0, profile=CHILD)
        assert [c.text for c in chapter.choices] == ["Open the door", "Climb the tower"]
        assert [c.generation_priority for c in chapter.choices] == [1, 2]
        assert all(c.emotional_weight == "curiosity" for c in chapter.choices)

    def test_missing_fields_are_derived_from_content(self):
        content = "Mira found a map. " * 20
        data = {"content": content, "choices": ["a", "b"]}
        chapter = build_chapter(data, depth=0, profile=CHILD, character_names=["Mira", "Oswin"])
        assert chapter.summary == content.strip()[:100] + "..."
        assert chapter.panel_description == content.strip()[:200]
        assert chapter.characters_present == ["Mira"]

    def test_out_of_range_priority_is_clamped(self):
        data = _data(choices=2)
        data["choices"][0]["generationPriority"] = 7
        chapter = build_chapter(data, depth=0, profile=CHILD)
        assert chapter.choices[0].generation_priority == 3

    def test_empty_content_is_parse_error(self):
        with pytest.raises(ParseError):
            build_chapter(_data(content="  "), depth=0, profile=CHILD)

    def test_chapter_round_trips_through_tagged_union(self):
        chapter = build_chapter(_data(is_ending=True, ending_type="tragic", choices=0), depth=8, profile=ADULT)
        restored = ChapterAdapter.validate_python(chapter.model_dump())
        assert isinstance(restored, EndingChapter)


@pytest.mark.anyio
async def test_generate_chapter_retries_malformed_output():
    generator = FakeTextGenerator(chapters=["not json at all", chapter_json(choices=2)])
    chapter = await generate_chapter(
        BibleDraft.model_validate(BIBLE),
        [],
        0,
        audience=Audience.CHILD,
        text_generator=generator,
        max_attempts=2,
    )
    assert isinstance(chapter, ContinuingChapter)
    assert len(generator.chapter_calls) == 2


@pytest.mark.anyio
async def test_generate_chapter_raises_last_error_when_exhausted():
    generator = FakeTextGenerator(chapters=["nope", chapter_json(choices=1)])
    with pytest.raises(InsufficientChoicesError):
        await generate_chapter(
            BibleDraft.model_validate(BIBLE),
            [],
            1,
            audience=Audience.CHILD,
            text_generator=generator,
            max_attempts=2,
        )


@pytest.mark.anyio
async def test_generate_chapter_without_attempts_raises_generation_error(monkeypatch):
    monkeypatch.setattr(settings, "chapter_max_attempts", 0)
    generator = FakeTextGenerator()
    with pytest.raises(GenerationError, match="not attempted"):
        await generate_chapter(
            BibleDraft.model_validate(BIBLE),
            [],
            0,
            audience=Audience.CHILD,
            text_generator=generator,
        )
    assert generator.chapter_calls == []


@pytest.mark.anyio
async def test_prompt_carries_context_and_choice():
    generator = FakeTextGenerator()
    chain = [
        {"node_key": "start", "title": "Fog", "summary": "Mira sees a lantern.", "choice_made": "Follow it"},
    ]
    await generate_chapter(
        BibleDraft.model_validate(BIBLE),
        chain,
        1,
        "Follow it",
        audience=Audience.CHILD,
        story_title="The Lantern Keeper",
        previous_content="x" * 5000,
        text_generator=generator,
    )
    call = generator.chapter_calls[0]
    assert "Mira sees a lantern." in call["user_prompt"]
    assert 'THE READER CHOSE: "Follow it"' in call["user_prompt"]
    assert "x" * (CHILD.context_length + 1) not in call["user_prompt"]
    assert "DO NOT END" in call["system_prompt"]
    assert call["max_tokens"] == CHILD.max_tokens
    assert call["temperature"] == CHILD.temperature


@pytest.mark.anyio
async def test_opening_uses_opening_budget():
    generator = FakeTextGenerator()
    await generate_chapter(BibleDraft.model_validate(BIBLE), [], 0, audience=Audience.ADULT, text_generator=generator)
    call = generator.chapter_calls[0]
    assert "OPENING chapter" in call["user_prompt"]
    assert call["max_tokens"] == ADULT.max_tokens + ADULT.opening_extra_tokens
    assert call["temperature"] == ADULT.opening_temperature
