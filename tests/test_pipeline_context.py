import pytest
from pydantic import TypeAdapter

from rawwire.core.errors import InterpolationError, ValidationError
from rawwire.pipeline.context import MISSING, interpolate, interpolate_value, lookup, resolve_path
from rawwire.pipeline.transforms import apply_transforms, evaluate_condition
from rawwire.schemas.pipelines import PipelineStep, Transform

CONTEXT = {
    "data": {"user": {"name": "Ada", "tags": ["x", "y"]}, "count": 3, "flag": True},
    "previous_result": None,
}


def test_resolve_path_walks_mappings_and_sequences() -> None:
    assert resolve_path(CONTEXT, "data.user.name") == "Ada"
    assert resolve_path(CONTEXT, "data.user.tags.1") == "y"
    assert resolve_path(CONTEXT, "data.user.tags.9") is MISSING
    assert resolve_path(CONTEXT, "data.user.name.first") is MISSING
    assert resolve_path(CONTEXT, "") is CONTEXT
    assert lookup(CONTEXT, "data.nope", "default") == "default"


def test_interpolate_renders_values() -> None:
    assert interpolate("Hi {{ data.user.name }} ({{data.count}})", CONTEXT) == "Hi Ada (3)"
    assert interpolate("{{data.flag}} {{data.user.tags}}", CONTEXT) == 'true ["x", "y"]'
    assert interpolate("[{{previous_result}}] [{{data.missing}}]", CONTEXT) == "[] []"


def test_strict_interpolation_raises_on_unresolved_path() -> None:
    with pytest.raises(InterpolationError):
        interpolate("{{data.missing}}", CONTEXT, strict=True)
    # a resolved null is not an error
    assert interpolate("{{previous_result}}", CONTEXT, strict=True) == ""


def test_interpolate_value_recurses_into_structures() -> None:
    rendered = interpolate_value({"who": "{{data.user.name}}", "tags": ["{{data.count}}", 7]}, CONTEXT)
    assert rendered == {"who": "Ada", "tags": ["3", 7]}


@pytest.mark.parametrize(
    ("actual", "operator", "expected", "passed"),
    [
        ("5", "equals", 5, True),
        (5, "strict_equals", "5", False),
        (5, "strict_equals", 5, True),
        ("a", "not_equals", "b", True),
        ("10", "greater", 9, True),
        (1, "less", 2, True),
        ("hello world", "contains", "world", True),
        (["a", "b"], "contains", "c", False),
        (MISSING, "exists", None, False),
        (0, "exists", None, True),
        ([], "empty", None, True),
        ("x", "not_empty", None, True),
    ],
)
def test_evaluate_condition(actual, operator, expected, passed) -> None:
    assert evaluate_condition(actual, operator, expected) is passed


def test_unknown_operator_is_rejected() -> None:
    with pytest.raises(ValidationError):
        evaluate_condition(1, "between", 2)


def _transforms(raw: list[dict]) -> list:
    return TypeAdapter(list[Transform]).validate_python(raw)


def test_transforms_compose() -> None:
    rows = [
        {"id": 1, "meta": {"lang": "en"}, "score": 80},
        {"id": 2, "meta": {"lang": "fr"}, "score": 20},
        {"id": 3, "meta": {"lang": "en"}},
    ]
    mapped = apply_transforms(rows, _transforms([{"type": "map", "fields": {"key": "id", "lang": "meta.lang"}}]))
    assert mapped[0] == {"key": 1, "lang": "en"}
    assert mapped[2] == {"key": 3, "lang": "en"}

    english = apply_transforms(
        rows,
        _transforms([{"type": "filter", "field": "meta.lang", "operator": "equals", "value": "en"}, {"type": "count"}]),
    )
    assert english == 2

    scores = apply_transforms(rows, _transforms([{"type": "pluck", "field": "score"}, {"type": "last"}]))
    assert scores == 20

    assert apply_transforms([], _transforms([{"type": "first"}])) is None
    assert apply_transforms("scalar", _transforms([{"type": "map", "fields": ["id"]}])) == "scalar"


def test_json_round_trip_transforms() -> None:
    encoded = apply_transforms({"a": [1, 2]}, _transforms([{"type": "json_encode"}]))
    assert encoded == '{"a": [1, 2]}'
    assert apply_transforms(encoded, _transforms([{"type": "json_decode"}])) == {"a": [1, 2]}
    with pytest.raises(ValidationError):
        apply_transforms("{not json", _transforms([{"type": "json_decode"}]))


def test_step_definitions_parse_from_json_documents() -> None:
    steps = TypeAdapter(list[PipelineStep]).validate_python(
        [
            {"type": "http", "url": "https://example.com", "critical": False},
            {"type": "delay", "seconds": 0.5},
            {"type": "transform", "transforms": [{"type": "count"}]},
        ]
    )
    assert [step.type for step in steps] == ["http", "delay", "transform"]
    assert steps[0].critical is False
    assert steps[1].critical is True
    assert steps[0].method == "GET"
