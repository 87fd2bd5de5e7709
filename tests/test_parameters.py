from __future__ import annotations

import pytest

from scad_customizer.core.annotations import (
    Assignment,
    SectionHeader,
    StopKeyword,
    classify_line,
    parse_annotation,
    parse_literal,
)
from scad_customizer.core.errors import ParameterValueError
from scad_customizer.core.parameters import extract_parameters, find_parameter, list_sections
from scad_customizer.schemas import ParameterType

SAMPLE = """// Parametric box
// [Dimensions]
tamanho_cubo = 30; // [10:100]
parede = 2.5;  // [0.5:0.5:10]
altura = 12;  // Height of the walls in mm

// [Style]
formato = "redondo"; // [redondo, quadrado]
tampa = true;
rotulo = "Caixa";
furos = 4; // [2, 4, 6, 8]
$fn = 64;
raio = tamanho_cubo / 2;

module caixa() {
    cube(tamanho_cubo);
}

depois = 5;
"""


def test_extracts_parameters_in_source_order():
    params = extract_parameters(SAMPLE)
    assert [p.name for p in params] == [
        "tamanho_cubo", "parede", "altura", "formato", "tampa", "rotulo", "furos",
    ]


def test_numeric_range_without_step():
    p = find_parameter(extract_parameters(SAMPLE), "tamanho_cubo")
    assert p.type == ParameterType.number
    assert p.value == 30
    assert (p.min, p.max, p.step) == (10, 100, None)
    assert p.options is None
    assert p.line == 2
    assert p.section == "Dimensions"
    assert p.comment == "[10:100]"


def test_numeric_range_step_is_middle_operand():
    p = find_parameter(extract_parameters(SAMPLE), "parede")
    assert (p.min, p.step, p.max) == (0.5, 0.5, 10)
    assert p.slider_step == 0.5


def test_plain_comment_is_description():
    p = find_parameter(extract_parameters(SAMPLE), "altura")
    assert p.description == "Height of the walls in mm"
    assert p.min is None and p.max is None and p.options is None


def test_string_options_in_source_order():
    p = find_parameter(extract_parameters(SAMPLE), "formato")
    assert p.type == ParameterType.string
    assert p.value == "redondo"
    assert p.options == ["redondo", "quadrado"]
    assert p.section == "Style"
    assert not p.ambiguous_annotation


def test_numeric_options_are_parsed_as_numbers():
    p = find_parameter(extract_parameters(SAMPLE), "furos")
    assert p.options == [2, 4, 6, 8]


def test_bool_and_plain_string():
    params = extract_parameters(SAMPLE)
    assert find_parameter(params, "tampa").type == ParameterType.bool
    assert find_parameter(params, "tampa").value is True
    rotulo = find_parameter(params, "rotulo")
    assert rotulo.type == ParameterType.string
    assert rotulo.value == "Caixa"


def test_special_variables_and_expressions_are_skipped():
    names = [p.name for p in extract_parameters(SAMPLE)]
    assert "$fn" not in names
    assert "raio" not in names


def test_scan_stops_at_first_module():
    names = [p.name for p in extract_parameters(SAMPLE)]
    assert "depois" not in names


def test_sections_listed_once_in_order():
    assert list_sections(extract_parameters(SAMPLE)) == ["Dimensions", "Style"]


@pytest.mark.parametrize(
    "source",
    [
        "$fn = 32;",
        "  $fa = 12; // [1:20]",
        "$preview = true;",
        '$label = "x";',
    ],
)
def test_sigil_identifiers_never_extracted(source):
    assert extract_parameters(source) == []


def test_block_comment_section_header():
    params = extract_parameters("/* [Hardware] */\nscrew = 3;\n")
    assert params[0].section == "Hardware"


def test_first_section_is_none_before_any_header():
    params = extract_parameters("a = 1;\n// [Later]\nb = 2;\n")
    assert params[0].section is None
    assert params[1].section == "Later"


def test_string_literal_may_contain_semicolon():
    params = extract_parameters('texto = "a;b"; // free text\n')
    assert params[0].value == "a;b"
    assert params[0].description == "free text"


def test_crlf_lines_are_recognised():
    params = extract_parameters("largura = 10; // [1:20]\r\naltura = 5;\r\n")
    assert [p.name for p in params] == ["largura", "altura"]
    assert params[0].max == 20


def test_function_keyword_also_stops_scan():
    params = extract_parameters("a = 1;\nfunction f(x) = x * 2;\nb = 2;\n")
    assert [p.name for p in params] == ["a"]


def test_range_forces_number_type_on_string_literal():
    p = extract_parameters('modo = "5"; // [1:10]\n')[0]
    assert p.type == ParameterType.number
    assert p.options is None


def test_ambiguous_bracket_content_is_accepted_as_list_and_flagged():
    # Neither a range nor a clean option list: kept as a list, but flagged.
    p = extract_parameters("tamanho = 10; // [10:Small, 20:Large]\n")[0]
    assert p.options == ["10:Small", "20:Large"]
    assert p.ambiguous_annotation is True


def test_malformed_range_is_flagged_not_parsed_as_range():
    p = extract_parameters("n = 1; // [1:2:3:4]\n")[0]
    assert p.min is None and p.max is None
    assert p.options == ["1:2:3:4"]
    assert p.ambiguous_annotation is True


def test_quoted_options_are_unquoted():
    p = extract_parameters('cor = "red"; // ["red", "green", blue]\n')[0]
    assert p.options == ["red", "green", "blue"]
    assert p.ambiguous_annotation is False


def test_slider_step_defaults():
    params = extract_parameters("a = 1; // [0:5]\nb = 50; // [0:100]\n")
    assert params[0].slider_step == 0.1
    assert params[1].slider_step == 1


def test_set_value_coerces_to_parameter_type():
    params = extract_parameters('n = 1;\nb = false;\ns = "x";\n')
    n, b, s = params
    n.set_value("2.5")
    b.set_value("true")
    s.set_value(42)
    assert (n.value, b.value, s.value) == (2.5, True, "42")
    with pytest.raises(ParameterValueError):
        n.set_value("abc")
    with pytest.raises(ParameterValueError):
        b.set_value(3)


# ---------------------------------------------------------------------------
# Lexer
# ---------------------------------------------------------------------------

def test_classify_line_shapes():
    assert classify_line("// [Title]") == SectionHeader("Title")
    assert classify_line("module foo() {") == StopKeyword("module")
    assert classify_line("") is None
    assert classify_line("cube(10);") is None
    assert classify_line("module_width = 3;").name == "module_width"


def test_assignment_span_covers_only_the_literal():
    line = "  largura   =   42.0  ;  // [1:100]"
    shape = classify_line(line)
    assert isinstance(shape, Assignment)
    assert line[shape.value_start:shape.value_end] == "42.0"
    assert shape.comment == "[1:100]"


@pytest.mark.parametrize(
    "line",
    [
        "a = 1; b = 2;",
        "a == 1;",
        "a = ;",
        'a = "unterminated;',
        "a = 1 /* c */;x",
    ],
)
def test_non_assignments(line):
    assert not isinstance(classify_line(line), Assignment)


@pytest.mark.parametrize(
    "token,expected",
    [
        ("true", ("bool", True)),
        ("false", ("bool", False)),
        ('"hello"', ("string", "hello")),
        ('""', ("string", "")),
        ("30", ("number", 30)),
        ("-2.5", ("number", -2.5)),
        ("1e3", ("number", 1000.0)),
        (".5", ("number", 0.5)),
    ],
)
def test_parse_literal(token, expected):
    assert parse_literal(token) == expected


@pytest.mark.parametrize("token", ["10 * 2", "[1, 2, 3]", "sin(30)", '"a" + "b"', "nan", "inf", "other"])
def test_parse_literal_rejects_expressions(token):
    assert parse_literal(token) is None


def test_parse_annotation_kinds():
    assert parse_annotation("").kind == "none"
    assert parse_annotation("just words").kind == "description"
    assert parse_annotation("[1:10] mm").kind == "description"
    rng = parse_annotation("[-5:0.25:5]")
    assert (rng.kind, rng.min, rng.step, rng.max) == ("range", -5, 0.25, 5)


@pytest.mark.parametrize("token", ["1e400", "-1e400", "1e309"])
def test_overflowing_numbers_are_not_literals(token):
    assert parse_literal(token) is None
    assert extract_parameters(f"big = {token};\n") == []


def test_overflowing_range_bound_is_not_a_range():
    p = extract_parameters("n = 1; // [0:1e400]\n")[0]
    assert p.min is None and p.max is None
    assert p.ambiguous_annotation is True


def test_leading_digit_identifier_is_extracted():
    p = extract_parameters("3d_height = 5; // [1:10]\n")[0]
    assert p.name == "3d_height"
    assert p.to_override().expression == "3d_height=5"
