"""Tests for analyzer result normalization."""

import pytest

from chatgate.errors import DataFormatError
from chatgate.services.suggestions import extract_project_update
from chatgate.services.suggestions import extract_task_suggestions
from chatgate.services.suggestions import extract_team_insights
from chatgate.services.suggestions import normalize_priority


@pytest.mark.parametrize(
    "value, expected",
    [("urgent", "high"), ("HIGH", "high"), ("critical", "high"), ("minor", "low"), ("low", "low"),
     ("normal", "medium"), (None, "medium")],
)
def test_normalize_priority(value, expected):
    assert normalize_priority(value) == expected


@pytest.mark.parametrize("key", ["detected_tasks", "taskSuggestions", "tasks", "suggestions"])
def test_all_task_list_shapes_are_accepted(key):
    raw = {key: [{"title": "Ship release notes", "priority": "urgent", "confidence": 0.9}]}

    suggestions = extract_task_suggestions(raw, conversation_id="C1")

    assert len(suggestions) == 1
    assert suggestions[0].title == "Ship release notes"
    assert suggestions[0].priority == "high"
    assert suggestions[0].confidence == 0.9
    assert suggestions[0].conversation_id == "C1"


def test_actionable_items_are_converted():
    raw = {"actionable_items": [{"task": "Book venue", "context": "offsite in March", "channel": "C7"}]}

    [suggestion] = extract_task_suggestions(raw)

    assert suggestion.title == "Book venue"
    assert suggestion.description == "offsite in March"
    assert suggestion.conversation_id == "C7"
    assert suggestion.priority == "medium"


def test_json_string_and_percent_confidence():
    raw = '{"tasks": [{"title": "Fix login", "confidence": 85}, {"title": ""}, "Review PR"]}'

    suggestions = extract_task_suggestions(raw)

    assert [s.title for s in suggestions] == ["Fix login", "Review PR"]
    assert suggestions[0].confidence == pytest.approx(0.85)
    assert suggestions[1].confidence == 0.5


def test_empty_result_yields_no_suggestions():
    assert extract_task_suggestions({"summary": "nothing to do"}) == []
    assert extract_task_suggestions([]) == []


@pytest.mark.parametrize("raw", ["not json at all", 42, {"tasks": "a string"}])
def test_malformed_results_raise_data_errors(raw):
    with pytest.raises(DataFormatError):
        extract_task_suggestions(raw)


def test_project_update_and_team_insights():
    assert extract_project_update({"updates": ["Beta shipped"], "insights": []}) == {
        "updates": ["Beta shipped"],
        "insights": [],
    }
    insights = extract_team_insights('{"insights": ["Most activity on Mondays"], "metrics": {"messages": 120}}')
    assert insights["metrics"] == {"messages": 120}

    with pytest.raises(DataFormatError):
        extract_team_insights({"metrics": [1, 2]})
