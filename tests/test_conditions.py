import pytest

from edgeci.conditions import (
    EvaluationEnv,
    Literal,
    and_,
    eq,
    evaluate,
    from_data,
    lit,
    or_,
    output,
    output_refs,
    param,
    parse_output_ref,
    to_data,
    var,
)
from edgeci.errors import ConditionResolutionError, ConditionTypeError, DefinitionError

RUNTIME = "CheckBuildImages.check_source_change_runtime.check_files.RUNTIMECHANGES"


def _env(parameters=None, variables=None, outputs=None):
    return EvaluationEnv(parameters or {}, variables or {}, outputs)


def test_no_condition_is_true():
    assert evaluate(None, _env()) is True


def test_build_gate_runs_outside_e2e_or_on_runtime_changes():
    gate = or_(eq(param("E2EBuild"), False), eq(output(RUNTIME), True))

    assert evaluate(gate, _env({"E2EBuild": False}, outputs=lambda ref: False)) is True
    assert evaluate(gate, _env({"E2EBuild": True}, outputs=lambda ref: True)) is True
    assert evaluate(gate, _env({"E2EBuild": True}, outputs=lambda ref: False)) is False


def test_operators_build_the_same_tree():
    cond = param("E2EBuild").equals(False) | var("arch").equals("amd64")

    assert str(cond) == "or(eq(parameters.E2EBuild, false), eq(variables.arch, 'amd64'))"
    assert evaluate(cond, _env({"E2EBuild": True}, {"arch": "amd64"})) is True
    assert evaluate(cond & lit(False), _env({"E2EBuild": False}, {"arch": "x"})) is False


def test_unknown_names_raise_instead_of_defaulting():
    with pytest.raises(ConditionResolutionError, match="unknown parameter"):
        evaluate(eq(param("Missing"), True), _env())
    with pytest.raises(ConditionResolutionError, match="unknown variable"):
        evaluate(eq(var("arch"), "amd64"), _env())


def test_outputs_are_not_visible_without_a_view():
    with pytest.raises(ConditionResolutionError, match="not visible"):
        evaluate(eq(output(RUNTIME), True), _env())


def test_eq_refuses_to_compare_different_types():
    with pytest.raises(ConditionTypeError):
        evaluate(eq(param("E2EBuild"), "false"), _env({"E2EBuild": False}))


def test_every_operand_is_resolved():
    # the first operand already decides the OR, the bad reference still surfaces
    cond = or_(lit(True), eq(param("Missing"), True))
    with pytest.raises(ConditionResolutionError):
        evaluate(cond, _env())


def test_non_boolean_operands_are_rejected():
    with pytest.raises(ConditionTypeError):
        evaluate(and_(lit(True), lit("yes")), _env())
    with pytest.raises(ConditionTypeError):
        evaluate(lit(1), _env())


def test_and_or_need_two_operands():
    with pytest.raises(DefinitionError):
        and_(lit(True))
    with pytest.raises(DefinitionError):
        or_()


def test_parse_output_ref_keeps_matrix_job_instance():
    ref = parse_output_ref("BuildPackages.linux.RedHat8-amd64.set_version.VERSION")

    assert ref.stage == "BuildPackages"
    assert ref.job == "linux.RedHat8-amd64"
    assert ref.task == "set_version"
    assert ref.name == "VERSION"
    assert ref.local == "linux.RedHat8-amd64.set_version.VERSION"


@pytest.mark.parametrize("ref", ["Stage.job.NAME", "Stage..task.NAME", ""])
def test_malformed_output_refs(ref):
    with pytest.raises(DefinitionError):
        output(ref)


def test_document_form():
    data = {
        "or": [
            {"eq": [{"parameter": "E2EBuild"}, False]},
            {"eq": [{"output": RUNTIME}, True]},
        ]
    }
    cond = from_data(data)

    assert to_data(cond) == data
    assert output_refs(cond) == [RUNTIME]
    assert from_data(True) == Literal(True)


@pytest.mark.parametrize(
    "data",
    [
        {"ne": [1, 2]},
        {"eq": [1]},
        {"parameter": 3},
        {"and": "x"},
        {"eq": [1, 2], "or": []},
    ],
)
def test_document_form_errors(data):
    with pytest.raises(DefinitionError):
        from_data(data)
