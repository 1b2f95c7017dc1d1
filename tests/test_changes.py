from edgeci.changes import ChangeDetector, packaging_changes, runtime_changes


def test_exclude_policy_ignores_test_doc_and_edgelet():
    detector = runtime_changes(("test/Microsoft.Azure.Devices.Edge.Test", "doc", "edgelet"))

    assert detector.detect(["doc/README.md", "edgelet/src/main.rs"]) is False
    assert detector.detect(["test/Microsoft.Azure.Devices.Edge.Test/Module.cs"]) is False
    assert detector.detect(["edge-hub/src/Program.cs"]) is True
    assert detector.detect(["doc/README.md", "edge-agent/src/Agent.cs"]) is True


def test_include_policy_only_cares_about_builds_and_edgelet():
    detector = packaging_changes()

    assert detector.detect(["edgelet/iotedge/src/main.rs"]) is True
    assert detector.detect(["builds/linux/package-identity.sh"]) is True
    assert detector.detect(["doc/README.md", "edge-hub/src/Program.cs"]) is False


def test_unknown_or_empty_change_set_is_treated_as_relevant():
    for detector in (runtime_changes(), packaging_changes()):
        assert detector.detect(None) is True
        assert detector.detect([]) is True
        assert detector.detect(["", "  "]) is True


def test_patterns_are_case_insensitive_and_anchored():
    detector = ChangeDetector(("doc",))

    assert detector.matches("Doc/Guide.md")
    assert detector.matches("./doc/guide.md")
    assert not detector.matches("edge-hub/doc/guide.md")


def test_relevant_paths_keeps_change_set_order():
    detector = packaging_changes()
    changed = ["edgelet/b.rs", "doc/x.md", "builds/a.sh"]

    assert detector.relevant_paths(changed) == ["edgelet/b.rs", "builds/a.sh"]


def test_patterns_are_regular_expressions():
    detector = ChangeDetector((r"edge-(hub|agent)/",), invert=True)

    assert detector.detect(["edge-agent/src/x.cs"]) is True
    assert detector.detect(["edge-modules/x.cs"]) is False
