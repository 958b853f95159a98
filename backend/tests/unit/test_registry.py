"""
Unit tests for the check registry, check base class and YAML loading.
"""

from datetime import datetime, timezone

import pytest

from ksiwatch.checks import CheckRegistry, FunctionCheck, Outcome, RuleCheck, build_registry, load_checks
from ksiwatch.checks.base import NO_EVIDENCE_DETAIL
from ksiwatch.exceptions import ConfigurationError, DuplicateCheck
from ksiwatch.models import Control, Evidence, KSIStatus

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def _always(status):
    return lambda control, evidence: status


@pytest.mark.unit
class TestCheckBase:
    """Test Check.validate wrapping."""

    def test_requires_evidence_false_without_evidence(self) -> None:
        check = FunctionCheck("c1", ["ac-2"], _always(KSIStatus.TRUE))
        result = check.validate(Control(id="ac-2"), [], evaluated_at=NOW)
        assert result.status == KSIStatus.FALSE
        assert result.message == NO_EVIDENCE_DETAIL

    def test_evidence_optional_check_runs_without_evidence(self) -> None:
        check = FunctionCheck("c1", ["ac-2"], _always(KSIStatus.TRUE), requires_evidence=False)
        assert check.validate(Control(id="ac-2"), [], evaluated_at=NOW).status == KSIStatus.TRUE

    def test_outcome_detail_becomes_message(self) -> None:
        ev = Evidence.from_payload(b"x", ["ac-2"], collected_at=NOW)
        check = FunctionCheck("c1", ["ac-2"], lambda c, e: Outcome(KSIStatus.PARTIAL, "half done", e[0].id))
        result = check.validate(Control(id="ac-2"), [ev], evaluated_at=NOW)
        assert (result.status, result.message, result.evidence_id) == (KSIStatus.PARTIAL, "half done", ev.id)
        assert result.evaluated_at == NOW

    def test_bool_outcome_coerced(self) -> None:
        ev = Evidence.from_payload(b"x", ["ac-2"])
        check = FunctionCheck("c1", ["ac-2"], _always(False))
        assert check.validate(Control(id="ac-2"), [ev]).status == KSIStatus.FALSE

    def test_control_ids_normalized_and_deduplicated(self) -> None:
        check = FunctionCheck("c1", ["AC-2", "ac-2", "SC-7"], _always(True))
        assert check.control_ids == ("ac-2", "sc-7")

    def test_check_needs_targets(self) -> None:
        with pytest.raises(ConfigurationError, match="no target controls"):
            FunctionCheck("c1", [], _always(True))


@pytest.mark.unit
class TestCheckRegistry:
    """Test registration and freezing."""

    def test_duplicate_check_id(self) -> None:
        registry = CheckRegistry([FunctionCheck("c1", ["ac-2"], _always(True))])
        with pytest.raises(DuplicateCheck) as exc_info:
            registry.register(FunctionCheck("c1", ["sc-7"], _always(True)))
        assert exc_info.value.check_id == "c1"

    def test_registration_order_preserved(self) -> None:
        registry = CheckRegistry()
        for cid in ("c3", "c1", "c2"):
            registry.register(FunctionCheck(cid, ["ac-2"], _always(True)))
        assert [c.check_id for c in registry.for_control("AC-2")] == ["c3", "c1", "c2"]

    def test_frozen_registry_rejects_registration(self) -> None:
        registry = CheckRegistry([FunctionCheck("c1", ["ac-2"], _always(True))])
        assert registry.freeze()[0].check_id == "c1"
        assert registry.frozen
        with pytest.raises(ConfigurationError, match="frozen"):
            registry.register(FunctionCheck("c2", ["ac-2"], _always(True)))

    def test_decorator_registration(self) -> None:
        registry = CheckRegistry()

        @registry.check("ac2-review", controls=["ac-2"], version="2")
        def ac2_review(control, evidence):
            return KSIStatus.TRUE

        assert "ac2-review" in registry
        assert registry.get("ac2-review").version == "2"

    def test_get_unknown(self) -> None:
        with pytest.raises(ConfigurationError):
            CheckRegistry().get("nope")

    def test_control_ids(self) -> None:
        registry = CheckRegistry(
            [
                FunctionCheck("c1", ["sc-7", "ac-2"], _always(True)),
                FunctionCheck("c2", ["ac-2"], _always(True)),
            ]
        )
        assert registry.control_ids() == ("ac-2", "sc-7")


CHECKS_YAML = """
checks:
  - id: ksi-iam-01
    title: MFA enforced
    version: "1.2"
    controls: [IA-2]
    check:
      method: evidence_attribute
      name: mfa
      equals: enforced
  - id: ksi-ced-01
    controls: ac-2
    check:
      method: declared_status
"""


@pytest.mark.unit
class TestLoadChecks:
    """Test YAML check definitions."""

    def test_load_list_file(self, tmp_path) -> None:
        path = tmp_path / "checks.yml"
        path.write_text(CHECKS_YAML)
        checks = load_checks(path)
        assert [c.check_id for c in checks] == ["ksi-iam-01", "ksi-ced-01"]
        assert checks[0].version == "1.2"
        assert checks[0].control_ids == ("ia-2",)
        assert checks[1].control_ids == ("ac-2",)

    def test_declared_status_does_not_require_evidence(self, tmp_path) -> None:
        path = tmp_path / "checks.yml"
        path.write_text(CHECKS_YAML)
        checks = {c.check_id: c for c in load_checks(path)}
        assert checks["ksi-iam-01"].requires_evidence
        assert not checks["ksi-ced-01"].requires_evidence

    def test_load_directory_recursively(self, tmp_path) -> None:
        (tmp_path / "iam").mkdir()
        (tmp_path / "iam" / "mfa.yaml").write_text(
            "id: ksi-iam-02\ncontrols: [ia-2]\ncheck:\n  method: evidence_present\n"
        )
        (tmp_path / "cna.yml").write_text("id: ksi-cna-01\ncontrols: [sc-7]\ncheck:\n  method: evidence_fresh\n")
        (tmp_path / "empty.yml").write_text("")
        assert sorted(c.check_id for c in load_checks(tmp_path)) == ["ksi-cna-01", "ksi-iam-02"]

    def test_unknown_method_fatal(self) -> None:
        with pytest.raises(ConfigurationError, match="unknown check method"):
            RuleCheck({"id": "bad", "controls": ["ac-2"], "check": {"method": "telepathy"}})

    def test_unknown_nested_method_fatal(self) -> None:
        definition = {
            "id": "bad",
            "controls": ["ac-2"],
            "check": {"checks": [{"method": "evidence_present"}, {"method": "nope"}]},
        }
        with pytest.raises(ConfigurationError, match="nope"):
            RuleCheck(definition)

    def test_missing_id_fatal(self) -> None:
        with pytest.raises(ConfigurationError, match="missing an 'id'"):
            RuleCheck({"controls": ["ac-2"], "check": {"method": "evidence_present"}})

    def test_missing_path(self, tmp_path) -> None:
        with pytest.raises(ConfigurationError, match="not found"):
            load_checks(tmp_path / "absent")

    def test_build_registry_detects_duplicates_across_files(self, tmp_path) -> None:
        a = tmp_path / "a.yml"
        b = tmp_path / "b.yml"
        a.write_text("id: dup\ncontrols: [ac-2]\ncheck:\n  method: evidence_present\n")
        b.write_text("id: dup\ncontrols: [sc-7]\ncheck:\n  method: evidence_present\n")
        with pytest.raises(DuplicateCheck):
            build_registry([a, b])

    def test_build_registry_with_extra_checks(self, tmp_path) -> None:
        a = tmp_path / "a.yml"
        a.write_text("id: yaml-check\ncontrols: [ac-2]\ncheck:\n  method: evidence_present\n")
        registry = build_registry([a], extra=[FunctionCheck("py-check", ["ac-2"], _always(True))])
        assert [c.check_id for c in registry.checks()] == ["yaml-check", "py-check"]
