from __future__ import annotations

from conftest import make_png_b64

from lessonforge.assembler import (
    SCORING_LEGEND,
    assemble_all,
    assemble_answer_key,
    assemble_lesson_plan,
    assemble_worksheet,
    image_src,
    map_images,
    size_class,
    total_points,
)
from lessonforge.image_generator import create_placeholder_image
from lessonforge.schemas import ImageResult, Plan


def _image(placement_id: str | None) -> ImageResult:
    return ImageResult(base64_data=make_png_b64(), width=64, height=64, placement_id=placement_id)


def test_size_classes() -> None:
    assert size_class("small") == "img-small"
    assert size_class("medium") == "img-medium"
    assert size_class("wide") == "img-wide"
    assert size_class("large") == "img-large"
    assert size_class("giant") == "img-default"
    assert size_class(None) == "img-default"


def test_worksheet_is_complete_document(make_plan) -> None:
    html = assemble_worksheet(make_plan(5))

    assert html.lstrip().startswith("<!DOCTYPE html>")
    assert "<style>" in html
    assert "<h1>Adding Within 10</h1>" in html
    assert "Name: ____" in html
    assert "Date: ____" in html
    assert html.count('class="question question-short_answer"') == 5
    assert '<span class="question-number">5.</span>' in html


def test_small_placement_renders_img_small(plan_data) -> None:
    placements = [
        {"afterItemId": "q2", "description": "Two apples", "purpose": "counting_support", "size": "small"},
    ]
    plan = Plan.model_validate(plan_data(5, placements=placements))

    html = assemble_worksheet(plan, [_image("q2")])

    assert 'class="worksheet-image img-small"' in html
    assert 'alt="Two apples"' in html
    q2 = html.index('data-item-id="q2"')
    q3 = html.index('data-item-id="q3"')
    assert q2 < html.index("worksheet-image img-small") < q3


def test_large_placement_renders_img_large(plan_data) -> None:
    placements = [{"afterItemId": "q1", "description": "Big map", "purpose": "diagram", "size": "large"}]
    plan = Plan.model_validate(plan_data(3, placements=placements))
    assert 'class="worksheet-image img-large"' in assemble_worksheet(plan, [_image("q1")])


def test_images_without_id_match_placement_by_position(plan_data) -> None:
    placements = [
        {"afterItemId": "q1", "description": "apples", "size": "small"},
        {"afterItemId": "q3", "description": "number line", "size": "wide"},
    ]
    plan = Plan.model_validate(plan_data(4, placements=placements))

    placed = map_images(plan, [_image(None), _image(None)])

    assert set(placed) == {"q1", "q3"}
    assert placed["q3"][0].css_class == "img-wide"


def test_images_for_unknown_items_are_skipped(plan_data) -> None:
    plan = Plan.model_validate(plan_data(2))
    assert map_images(plan, [_image("q9")]) == {}


def test_placeholder_image_becomes_svg_data_url() -> None:
    placeholder = create_placeholder_image("apples", "q1")
    assert image_src(placeholder).startswith("data:image/svg+xml;base64,PHN2Zy")
    assert image_src(_image("q1")).startswith("data:image/png;base64,")


def test_question_text_is_escaped(plan_data) -> None:
    data = plan_data(1)
    data["structure"]["sections"][0]["items"][0]["questionText"] = "Is 3 < 5 & 5 > 3?"
    html = assemble_worksheet(Plan.model_validate(data))
    assert "Is 3 &lt; 5 &amp; 5 &gt; 3?" in html


def test_question_types_render_their_answer_areas(plan_data) -> None:
    data = plan_data(4)
    items = data["structure"]["sections"][0]["items"]
    items[0].update({"questionType": "multiple_choice", "options": ["2", "3", "4"], "correctAnswer": "3"})
    items[1].update({"questionType": "true_false", "questionText": "Five is more than two.", "correctAnswer": "True"})
    items[2].update({"questionType": "fill_blank", "questionText": "2 + 2 = ____ and 3 + 3 = ____"})
    items[3].update({"questionType": "matching", "questionText": "Cat"})

    html = assemble_worksheet(Plan.model_validate(data))

    assert '<div class="option">A. 2</div>' in html
    assert '<div class="option">C. 4</div>' in html
    assert "&#9675; True" in html
    assert html.count('<span class="answer-line">&nbsp;</span>') == 2
    assert '<span class="matching-left">Cat</span>' in html


def test_numbering_continues_across_sections(plan_data) -> None:
    data = plan_data(3)
    sections = data["structure"]["sections"]
    sections.append({"id": "s2", "title": "Challenge", "items": [dict(sections[0]["items"][0], id="q4")]})
    html = assemble_worksheet(Plan.model_validate(data))
    assert '<span class="question-number">4.</span>' in html
    assert "Challenge" in html


def test_answer_key_lists_answers_and_points(plan_data) -> None:
    data = plan_data(3)
    data["structure"]["sections"][0]["items"][0]["points"] = 2
    plan = Plan.model_validate(data)

    html = assemble_answer_key(plan)

    assert "ANSWER KEY" in html
    assert html.count('class="answer-item"') == 3
    assert '<div class="answer-text">3</div>' in html
    assert "Start at 1 and count on two." in html
    assert "<strong>4</strong>" in html
    assert SCORING_LEGEND in html
    assert total_points(plan) == 4


def test_lesson_plan_uses_metadata(make_plan) -> None:
    html = assemble_lesson_plan(make_plan(2))
    assert "Grade 1 | Math | 15-20 minutes" in html
    assert "<li>Add within 10</li>" in html
    assert "about Addition." in html
    assert "first 2 problems together" in html


def test_lesson_plan_singular_guided_practice(make_plan) -> None:
    assert "first 1 problem together" in assemble_lesson_plan(make_plan(1))


def test_assemble_all_respects_flags(make_plan) -> None:
    result = assemble_all(make_plan(2), include_answer_key=False, include_lesson_plan=False)
    assert result.worksheet_html
    assert result.answer_key_html == ""
    assert result.lesson_plan_html == ""

    full = assemble_all(make_plan(2))
    assert full.answer_key_html and full.lesson_plan_html
