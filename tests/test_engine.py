"""Tests for the governance engine: gate chain, recorders, execution."""

import logging
import tempfile
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from unittest.mock import patch

import pytest

from intent_kernel import (
    ActionOutcome,
    AuditLedger,
    ConcurrencyGate,
    ConcurrencyGuard,
    DenialCode,
    FingerprintRecorder,
    Gate,
    GovernanceConfig,
    GovernanceEngine,
    InMemorySessionStore,
    IntentCatalog,
    IntentCatalogError,
    LedgerRecorder,
    MutationClass,
    ResultStatus,
    ScopeGate,
    ScopeMatcher,
    StateGate,
    TurnState,
    TurnStateMachine,
    compute_content_hash,
)
from intent_kernel.decision import Decision

INTENTS_YAML = """\
active_intents:
  - id: INT-001
    name: Build Weather API
    status: IN_PROGRESS
    owned_scope: ["src/api/**"]
    constraints: ["Maintain backward compatibility"]
  - id: INT-002
    name: Harden Authentication
    status: PENDING
    owned_scope: ["src/auth/**"]
  - id: INT-003
    name: Unscoped Chores
    owned_scope: []
"""


def make_engine(tmpdir: str, **config_overrides) -> GovernanceEngine:
    orch = Path(tmpdir) / ".orchestration"
    orch.mkdir(exist_ok=True)
    (orch / "active_intents.yaml").write_text(INTENTS_YAML)
    (orch / ".intentignore").write_text("**/*.lock\n")
    config = GovernanceConfig(workspace_root=tmpdir, model_identifier="test-model", **config_overrides)
    return GovernanceEngine(config, revision_provider=lambda: "abc1234")


def write_tool(root: str):
    def tool(payload):
        path = Path(root) / (payload.get("path") or payload["file_path"])
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(payload.get("content", ""))
        return {"bytes": len(payload.get("content", ""))}
    return tool


def read_tool(root: str):
    def tool(payload):
        return (Path(root) / payload["path"]).read_text()
    return tool


class TestEndToEnd:
    """Tests for the full handshake -> write -> audit flow."""

    def test_select_write_violate_audit(self):
        """One allowed write, one scope violation, exactly one MUTATION record."""
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = make_engine(tmpdir)
            engine.start_session("s1")

            assert engine.select_intent("s1", "INT-001").allowed

            ok = engine.execute("s1", "write_to_file", {"path": "src/api/x.ts", "content": "export {}"},
                                write_tool(tmpdir))
            assert ok.status is ResultStatus.SUCCEEDED
            assert (Path(tmpdir) / "src/api/x.ts").read_text() == "export {}"

            denied = engine.execute("s1", "write_to_file", {"path": "src/auth/y.ts", "content": "nope"},
                                    write_tool(tmpdir))
            assert denied.status is ResultStatus.DENIED
            assert denied.decision.code is DenialCode.SCOPE_VIOLATION
            assert denied.decision.details_dict["allowed_scope"] == ["src/api/**"]
            assert denied.decision.details_dict["target_file"] == "src/auth/y.ts"
            assert not (Path(tmpdir) / "src/auth/y.ts").exists()

            records = engine.ledger.replay()
            mutations = [r for r in records if r.mutation_class is MutationClass.MUTATION]
            assert len(records) == 1
            assert len(mutations) == 1
            entry = mutations[0].files[0]
            assert entry.relative_path == "src/api/x.ts"
            assert entry.content_hash == f"sha256:{compute_content_hash('export {}')}"
            assert entry.related_intent == "INT-001"
            assert entry.contributor.model_identifier == "test-model"
            assert mutations[0].revision_id == "abc1234"
            assert mutations[0].session_id == "s1"

    def test_selection_through_evaluate(self):
        """select_active_intent as an action returns the context block."""
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = make_engine(tmpdir)

            decision = engine.evaluate("s1", "select_active_intent", {"intent_id": "INT-001"})

            assert decision.allowed
            assert "<id>INT-001</id>" in decision.details_dict["intent_context"]
            assert engine.machine.get_state("s1") is TurnState.CONTEXT_LOADED

    def test_selection_errors_through_evaluate(self):
        """Missing and unknown ids are denied with their own codes."""
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = make_engine(tmpdir)
            engine.start_session("s1")

            missing = engine.evaluate("s1", "select_active_intent", {})
            invalid = engine.evaluate("s1", "select_active_intent", {"intent_id": "INT-404"})

            assert missing.code is DenialCode.MISSING_INTENT_ID
            assert invalid.code is DenialCode.INVALID_INTENT_ID
            assert invalid.details_dict["valid_intent_ids"] == ["INT-001", "INT-002", "INT-003"]
            assert engine.machine.get_state("s1") is TurnState.AWAITING_INTENT


class TestHandshakeEnforcement:
    """Tests for actions attempted before the handshake."""

    @pytest.mark.parametrize("action,payload", [
        ("write_to_file", {"path": "src/api/x.ts", "content": "x"}),
        ("apply_diff", {"path": "src/api/x.ts", "diff": "@@"}),
        ("edit_file", {"file_path": "src/api/x.ts", "new_string": "x"}),
        ("execute_command", {"command": "rm -rf build"}),
        ("some_new_tool", {"anything": 1}),
    ])
    def test_destructive_actions_require_intent(self, action, payload):
        """Every non-safe action is denied with NO_ACTIVE_INTENT; nothing is recorded."""
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = make_engine(tmpdir)
            engine.start_session("s1")

            decision = engine.evaluate("s1", action, payload)

            assert decision.code is DenialCode.NO_ACTIVE_INTENT
            assert decision.gate == "state"
            assert decision.details_dict["valid_intent_ids"] == ["INT-001", "INT-002", "INT-003"]
            assert engine.ledger.replay() == []
            assert engine.guard.tracked("s1") == {}

    def test_state_gate_runs_before_scope(self):
        """An out-of-scope write before the handshake reports the handshake."""
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = make_engine(tmpdir)

            decision = engine.evaluate("s1", "write_to_file", {"path": "../outside.ts", "content": ""})

            assert decision.code is DenialCode.NO_ACTIVE_INTENT

    def test_safe_actions_need_no_handshake(self):
        """Reads are allowed before an intent is selected."""
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = make_engine(tmpdir)
            engine.start_session("s1")

            assert engine.evaluate("s1", "read_file", {"path": "src/api/x.ts"}).allowed
            assert engine.evaluate("s1", "list_files", {}).allowed

    def test_ended_session_loses_its_intent(self):
        """end_session drops state; the next write needs a new handshake."""
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = make_engine(tmpdir)
            engine.select_intent("s1", "INT-001")

            engine.end_session("s1")

            decision = engine.evaluate("s1", "write_to_file", {"path": "src/api/x.ts", "content": ""})
            assert decision.code is DenialCode.NO_ACTIVE_INTENT


class TestScopeEnforcement:
    """Tests for owned-scope checks through the engine."""

    def test_edit_family_uses_file_path(self):
        """In-place edits are scoped by their file_path field."""
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = make_engine(tmpdir)
            engine.select_intent("s1", "INT-001")

            inside = engine.evaluate("s1", "edit_file", {"file_path": "src/api/a.ts", "new_string": "x"})
            outside = engine.evaluate("s1", "search_and_replace", {"file_path": "src/auth/a.ts"})

            assert inside.allowed
            assert outside.code is DenialCode.SCOPE_VIOLATION

    def test_outside_workspace_is_never_authorized(self):
        """Even an unscoped intent cannot write outside the workspace."""
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = make_engine(tmpdir)
            engine.select_intent("s1", "INT-003")

            assert engine.evaluate("s1", "write_to_file", {"path": "anything/at/all.py", "content": ""}).allowed
            decision = engine.evaluate("s1", "write_to_file", {"path": "../../etc/hosts", "content": ""})

            assert decision.code is DenialCode.SCOPE_VIOLATION

    def test_absolute_target_inside_workspace(self):
        """Absolute paths are normalized before matching."""
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = make_engine(tmpdir)
            engine.select_intent("s1", "INT-001")
            target = engine.workspace_root / "src" / "api" / "abs.ts"

            assert engine.evaluate("s1", "write_to_file", {"path": str(target), "content": ""}).allowed

    def test_ignored_paths_bypass_scope(self):
        """Ignore-list entries are writable under any intent."""
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = make_engine(tmpdir)
            engine.select_intent("s1", "INT-001")

            assert engine.evaluate("s1", "write_to_file", {"path": "package.lock", "content": ""}).allowed

    def test_commands_are_not_scope_checked(self):
        """Commands need a handshake but have no target path."""
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = make_engine(tmpdir)
            engine.select_intent("s1", "INT-001")

            result = engine.execute("s1", "execute_command", {"command": "make test"}, lambda p: "ok")

            assert result.ok
            record = engine.ledger.replay()[0]
            assert record.mutation_class is MutationClass.EXTERNAL_EFFECT
            assert record.files == ()


class TestMalformedRequests:
    """Tests for payload validation at the boundary."""

    def test_missing_target_field(self):
        """A write without its path is MALFORMED_REQUEST naming the field."""
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = make_engine(tmpdir)
            engine.select_intent("s1", "INT-001")

            decision = engine.evaluate("s1", "write_to_file", {"content": "x"})

            assert decision.code is DenialCode.MALFORMED_REQUEST
            assert decision.details_dict["field"] == "path"

    def test_wrong_field_for_family(self):
        """Edits are not looked up by `path`; the rule names `file_path`."""
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = make_engine(tmpdir)
            engine.select_intent("s1", "INT-001")

            decision = engine.evaluate("s1", "edit_file", {"path": "src/api/a.ts"})

            assert decision.code is DenialCode.MALFORMED_REQUEST
            assert decision.details_dict["field"] == "file_path"

    def test_non_mapping_payload(self):
        """Payloads must be mappings."""
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = make_engine(tmpdir)

            assert engine.evaluate("s1", "write_to_file", ["src/api/x.ts"]).code is DenialCode.MALFORMED_REQUEST

    def test_non_string_target(self):
        """A non-string path is rejected, not coerced."""
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = make_engine(tmpdir)
            engine.select_intent("s1", "INT-001")

            assert engine.evaluate("s1", "write_to_file", {"path": 42}).code is DenialCode.MALFORMED_REQUEST


class TestStaleWrites:
    """Tests for optimistic concurrency through the engine."""

    def test_external_change_then_reread(self):
        """Read, external edit, STALE_FILE, re-read, retry succeeds."""
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = make_engine(tmpdir)
            path = Path(tmpdir) / "src/api/x.ts"
            path.parent.mkdir(parents=True)
            path.write_text("v0")
            engine.select_intent("s1", "INT-001")

            engine.execute("s1", "read_file", {"path": "src/api/x.ts"}, read_tool(tmpdir))
            h0 = engine.guard.tracked("s1")["src/api/x.ts"]
            path.write_text("v1 by a human")

            stale = engine.execute("s1", "write_to_file", {"path": "src/api/x.ts", "content": "v2"},
                                   write_tool(tmpdir))
            assert stale.status is ResultStatus.DENIED
            assert stale.decision.code is DenialCode.STALE_FILE
            assert stale.decision.details_dict["expected_hash"] == h0
            assert stale.decision.details_dict["actual_hash"] == compute_content_hash("v1 by a human")
            assert path.read_text() == "v1 by a human"

            engine.execute("s1", "read_file", {"path": "src/api/x.ts"}, read_tool(tmpdir))
            retry = engine.execute("s1", "write_to_file", {"path": "src/api/x.ts", "content": "v2"},
                                   write_tool(tmpdir))

            assert retry.ok
            assert engine.guard.tracked("s1")["src/api/x.ts"] == compute_content_hash("v2")

    def test_two_agents_same_file(self):
        """Agent B's write makes agent A's later write stale."""
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = make_engine(tmpdir)
            path = Path(tmpdir) / "src/api/shared.ts"
            path.parent.mkdir(parents=True)
            path.write_text("base")
            for session in ("a", "b"):
                engine.select_intent(session, "INT-001")
                engine.execute(session, "read_file", {"path": "src/api/shared.ts"}, read_tool(tmpdir))

            assert engine.execute("b", "write_to_file", {"path": "src/api/shared.ts", "content": "from b"},
                                  write_tool(tmpdir)).ok
            result = engine.execute("a", "write_to_file", {"path": "src/api/shared.ts", "content": "from a"},
                                    write_tool(tmpdir))

            assert result.decision.code is DenialCode.STALE_FILE
            assert path.read_text() == "from b"

    def test_own_writes_never_conflict(self):
        """Consecutive writes by one session refresh its fingerprint."""
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = make_engine(tmpdir)
            engine.select_intent("s1", "INT-001")
            tool = write_tool(tmpdir)

            for i in range(3):
                assert engine.execute("s1", "write_to_file", {"path": "src/api/x.ts", "content": str(i)}, tool).ok


class _FailingStore(InMemorySessionStore):
    def get(self, session_id):
        raise RuntimeError("store down")


class TestFaultHandling:
    """Tests for gate and recorder faults."""

    def test_essential_gate_fault_denies(self):
        """A raising scope gate yields GATE_FAULT, never an allow."""
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = make_engine(tmpdir)
            engine.select_intent("s1", "INT-001")

            with patch.object(ScopeGate, "check", side_effect=RuntimeError("matcher exploded")):
                decision = engine.evaluate("s1", "write_to_file", {"path": "src/api/x.ts", "content": ""})

            assert decision.code is DenialCode.GATE_FAULT
            assert decision.details_dict["gate"] == "scope"
            assert "matcher exploded" in decision.details_dict["error"]

    def test_observational_gate_fault_is_skipped(self):
        """A raising concurrency gate is logged and the chain continues."""
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = make_engine(tmpdir)
            engine.select_intent("s1", "INT-001")

            with patch.object(ConcurrencyGate, "check", side_effect=OSError("permission denied")):
                decision = engine.evaluate("s1", "write_to_file", {"path": "src/api/x.ts", "content": ""})

            assert decision.allowed
            assert decision.details_dict["gates_passed"] == ["state", "scope"]

    def test_ledger_fault_does_not_rescind_allow(self, caplog):
        """A failing audit append is logged; the action still succeeded."""
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = make_engine(tmpdir)
            engine.select_intent("s1", "INT-001")

            with patch.object(LedgerRecorder, "record", side_effect=OSError("disk full")):
                with caplog.at_level(logging.ERROR, logger="intent_kernel.engine"):
                    result = engine.execute("s1", "write_to_file", {"path": "src/api/x.ts", "content": "x"},
                                            write_tool(tmpdir))

            assert result.ok
            assert "ledger" in caplog.text
            assert engine.guard.tracked("s1")["src/api/x.ts"] == compute_content_hash("x")

    def test_fingerprint_fault_does_not_block_audit(self):
        """Recorders are isolated from each other."""
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = make_engine(tmpdir)
            engine.select_intent("s1", "INT-001")

            with patch.object(FingerprintRecorder, "record", side_effect=RuntimeError("boom")):
                result = engine.execute("s1", "write_to_file", {"path": "src/api/x.ts", "content": "x"},
                                        write_tool(tmpdir))

            assert result.ok
            assert len(engine.ledger.replay()) == 1

    def test_store_fault_denies_at_state(self):
        """A session store that cannot be read fails closed as a state GATE_FAULT."""
        with tempfile.TemporaryDirectory() as tmpdir:
            catalog = make_engine(tmpdir).catalog
            engine = GovernanceEngine(GovernanceConfig(workspace_root=tmpdir), catalog=catalog,
                                      store=_FailingStore(), revision_provider=lambda: "abc1234")

            decision = engine.evaluate("s1", "write_to_file", {"path": "src/api/a.ts", "content": ""})

            assert decision.code is DenialCode.GATE_FAULT
            assert decision.gate == "state"
            assert "store down" in decision.details_dict["error"]

    def test_store_fault_while_recording_is_logged(self, caplog):
        """record() swallows a store fault instead of raising to the caller."""
        with tempfile.TemporaryDirectory() as tmpdir:
            catalog = make_engine(tmpdir).catalog
            engine = GovernanceEngine(GovernanceConfig(workspace_root=tmpdir), catalog=catalog,
                                      store=_FailingStore(), revision_provider=lambda: "abc1234")

            with caplog.at_level(logging.ERROR, logger="intent_kernel.engine"):
                engine.record("s1", "write_to_file", {"path": "src/api/a.ts", "content": "x"},
                              ActionOutcome.succeeded())

            assert "session lookup faulted" in caplog.text
            assert not engine.ledger.path.exists()

    def test_ended_session_keeps_no_fingerprints(self):
        """Recording after end_session does not recreate the fingerprint table."""
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = make_engine(tmpdir)
            engine.select_intent("s1", "INT-001")
            engine.end_session("s1")
            (Path(tmpdir) / "src" / "api").mkdir(parents=True)
            (Path(tmpdir) / "src" / "api" / "x.ts").write_text("x")

            with patch.object(ConcurrencyGuard, "refresh") as refresh, \
                    patch.object(ConcurrencyGuard, "observe") as observe:
                engine.record("s1", "write_to_file", {"path": "src/api/x.ts", "content": "x"},
                              ActionOutcome.succeeded())
                engine.record("s1", "read_file", {"path": "src/api/x.ts"}, ActionOutcome.succeeded("x"))

            refresh.assert_not_called()
            observe.assert_not_called()
            assert engine.store.get("s1") is None
            assert len(engine.ledger.replay()) == 2


class TestExecutionOutcomes:
    """Tests for distinguishing denied, failed and succeeded actions."""

    def test_raising_tool_is_failed_not_denied(self):
        """A tool exception becomes FAILED and is recorded as allowed-but-failed."""
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = make_engine(tmpdir)
            engine.select_intent("s1", "INT-001")

            def broken(payload):
                raise PermissionError("read-only filesystem")

            result = engine.execute("s1", "write_to_file", {"path": "src/api/x.ts", "content": "x"}, broken)

            assert result.status is ResultStatus.FAILED
            assert result.decision.allowed
            assert "PermissionError" in result.error
            record = engine.ledger.replay()[0]
            assert record.allowed and not record.success
            assert engine.ledger.get_failures() == [record]

    def test_error_result_is_failed(self):
        """A mapping result with an error is FAILED."""
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = make_engine(tmpdir)
            engine.select_intent("s1", "INT-001")

            result = engine.execute("s1", "execute_command", {"command": "false"},
                                    lambda p: {"error": "exit status 1"})

            assert result.status is ResultStatus.FAILED
            assert result.error == "exit status 1"

    def test_failed_write_keeps_fingerprint(self):
        """Fingerprints move only on successful writes."""
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = make_engine(tmpdir)
            path = Path(tmpdir) / "src/api/x.ts"
            path.parent.mkdir(parents=True)
            path.write_text("v0")
            engine.select_intent("s1", "INT-001")
            engine.execute("s1", "read_file", {"path": "src/api/x.ts"}, read_tool(tmpdir))
            before = engine.guard.tracked("s1")

            engine.execute("s1", "write_to_file", {"path": "src/api/x.ts", "content": "v1"},
                           lambda p: {"error": "quota"})

            assert engine.guard.tracked("s1") == before

    def test_write_returns_session_to_context_loaded(self):
        """A completed write resets ACTION_ALLOWED to CONTEXT_LOADED."""
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = make_engine(tmpdir)
            engine.select_intent("s1", "INT-001")
            engine.machine.allow_action("s1")

            engine.execute("s1", "write_to_file", {"path": "src/api/x.ts", "content": ""}, write_tool(tmpdir))

            assert engine.machine.get_state("s1") is TurnState.CONTEXT_LOADED

    def test_result_serialization(self):
        """GovernedResult.to_dict exposes status and decision."""
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = make_engine(tmpdir)

            data = engine.execute("s1", "write_to_file", {"path": "a", "content": ""}, write_tool(tmpdir)).to_dict()

            assert data["status"] == "denied"
            assert data["decision"]["code"] == "NO_ACTIVE_INTENT"


class TestOptionalRecorders:
    """Tests for opt-in behavior."""

    def test_denial_audit(self):
        """With audit_denials, denied attempts are appended with their code."""
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = make_engine(tmpdir, audit_denials=True)
            engine.start_session("s1")

            engine.evaluate("s1", "write_to_file", {"path": "src/api/x.ts", "content": ""})
            engine.select_intent("s1", "INT-001")
            engine.evaluate("s1", "write_to_file", {"path": "src/auth/y.ts", "content": ""})

            rejections = engine.ledger.get_rejections()
            assert [r.denial_code for r in rejections] == ["NO_ACTIVE_INTENT", "SCOPE_VIOLATION"]
            assert rejections[0].intent_id is None
            assert rejections[1].intent_id == "INT-001"
            assert rejections[1].files[0].relative_path == "src/auth/y.ts"
            assert all(not r.allowed for r in rejections)

    def test_intent_map(self):
        """Successful writes maintain one table row per file."""
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = make_engine(tmpdir, maintain_intent_map=True)
            engine.select_intent("s1", "INT-001")
            tool = write_tool(tmpdir)

            engine.execute("s1", "write_to_file", {"path": "src/api/a.ts", "content": "1"}, tool)
            engine.execute("s1", "write_to_file", {"path": "src/api/b.ts", "content": "2"}, tool)
            engine.execute("s1", "write_to_file", {"path": "src/api/a.ts", "content": "3"}, tool)

            text = engine.config.intent_map_path.read_text()
            assert "## INT-001: Build Weather API" in text
            assert "**Status:** IN_PROGRESS" in text
            assert text.count("| src/api/a.ts |") == 1
            assert text.count("| src/api/b.ts |") == 1
            assert compute_content_hash("3") in text

    def test_intent_map_sections_per_intent(self):
        """Each intent gets its own section."""
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = make_engine(tmpdir, maintain_intent_map=True)
            tool = write_tool(tmpdir)
            engine.select_intent("a", "INT-001")
            engine.select_intent("b", "INT-002")

            engine.execute("a", "write_to_file", {"path": "src/api/a.ts", "content": ""}, tool)
            engine.execute("b", "edit_file", {"file_path": "src/auth/b.ts", "content": ""}, tool)

            text = engine.config.intent_map_path.read_text()
            api, auth = text.split("## INT-002")
            assert "src/api/a.ts" in api
            assert "src/auth/b.ts" in auth


class _PassGate(Gate):
    essential = False

    def __init__(self, name, priority):
        self.name = name
        self.priority = priority

    def applies_to(self, ctx):
        return True

    def check(self, ctx):
        return Decision.allow(gate=self.name)


class TestComposition:
    """Tests for gate ordering and engine wiring."""

    def test_gates_run_by_priority_not_registration(self):
        """Registration order does not matter."""
        with tempfile.TemporaryDirectory() as tmpdir:
            base = make_engine(tmpdir)
            store = InMemorySessionStore()
            catalog = base.catalog
            machine = TurnStateMachine(store, catalog)
            gates = [
                ScopeGate(ScopeMatcher(catalog)),
                _PassGate("late", 99),
                StateGate(machine, catalog),
                _PassGate("early", 1),
                ConcurrencyGate(ConcurrencyGuard(store)),
            ]
            engine = GovernanceEngine(base.config, catalog=catalog, store=store, gates=gates,
                                      revision_provider=lambda: "abc1234")

            assert [g.name for g in engine.gates] == ["early", "state", "concurrency", "scope", "late"]

            engine.select_intent("s1", "INT-001")
            decision = engine.evaluate("s1", "write_to_file", {"path": "src/api/x.ts", "content": ""})
            assert decision.details_dict["gates_passed"] == ["early", "state", "concurrency", "scope", "late"]

    def test_default_recorders(self):
        """Fingerprint refresh runs before the audit append."""
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = make_engine(tmpdir)

            assert [r.name for r in engine.recorders] == ["fingerprint", "ledger"]
            assert [r.name for r in make_engine(tmpdir, maintain_intent_map=True).recorders] == [
                "fingerprint", "ledger", "intent_map",
            ]

    def test_missing_declarations_fail_fast(self):
        """The engine refuses to start without an intent catalog."""
        with tempfile.TemporaryDirectory() as tmpdir:
            with pytest.raises(IntentCatalogError):
                GovernanceEngine(GovernanceConfig(workspace_root=tmpdir))

    def test_injected_catalog(self):
        """A catalog may be supplied directly instead of loaded."""
        with tempfile.TemporaryDirectory() as tmpdir:
            catalog = IntentCatalog.from_records([{"id": "INT-9", "name": "x", "owned_scope": ["*"]}])
            engine = GovernanceEngine(GovernanceConfig(workspace_root=tmpdir), catalog=catalog,
                                      revision_provider=lambda: "r1")

            assert engine.select_intent("s1", "INT-9").allowed
            assert engine.evaluate("s1", "write_to_file", {"path": "top.txt", "content": ""}).allowed
            assert engine.evaluate("s1", "write_to_file", {"path": "dir/nested.txt", "content": ""}).denied

    def test_injected_empty_collaborators_are_kept(self):
        """An empty catalog, store or ledger is used as given, not replaced."""
        with tempfile.TemporaryDirectory() as tmpdir:
            catalog = IntentCatalog([])
            store = InMemorySessionStore()
            ledger = AuditLedger(Path(tmpdir) / "elsewhere" / "trace.jsonl")
            engine = GovernanceEngine(GovernanceConfig(workspace_root=tmpdir), catalog=catalog,
                                      store=store, ledger=ledger, revision_provider=lambda: "r1")

            assert engine.catalog is catalog
            assert engine.store is store
            assert engine.ledger is ledger
            assert len(engine.catalog) == 0
            assert engine.select_intent("s1", "INT-001").code is DenialCode.INVALID_INTENT_ID

    def test_parallel_sessions_write_their_own_files(self):
        """Many sessions executing at once each get one ledger record."""
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = make_engine(tmpdir)
            tool = write_tool(tmpdir)

            def run(i):
                session = f"s{i}"
                engine.select_intent(session, "INT-001")
                return engine.execute(session, "write_to_file",
                                      {"path": f"src/api/f{i}.ts", "content": str(i)}, tool)

            with ThreadPoolExecutor(max_workers=8) as pool:
                results = list(pool.map(run, range(40)))

            assert all(r.ok for r in results)
            records = engine.ledger.replay()
            assert len(records) == 40
            assert {r.session_id for r in records} == {f"s{i}" for i in range(40)}


class TestGovernanceConfig:
    """Tests for configuration."""

    def test_paths_resolve_under_workspace(self):
        """Relative orchestration paths resolve against the workspace."""
        with tempfile.TemporaryDirectory() as tmpdir:
            config = GovernanceConfig(workspace_root=tmpdir)
            root = Path(tmpdir).resolve()

            assert config.orchestration_path == root / ".orchestration"
            assert config.ledger_path == root / ".orchestration" / "agent_trace.jsonl"
            assert config.intent_map_path == root / ".orchestration" / "intent_map.md"

    def test_dict_round_trip(self):
        """to_dict / from_dict preserve every field."""
        config = GovernanceConfig(workspace_root="/repo", audit_denials=True, model_identifier="m")

        assert GovernanceConfig.from_dict(config.to_dict()) == config

    def test_unknown_keys_rejected(self):
        """Typos in config files are reported."""
        with pytest.raises(ValueError):
            GovernanceConfig.from_dict({"audit_denial": True})

    def test_config_is_frozen(self):
        """Configuration cannot change under a running engine."""
        with pytest.raises((AttributeError, TypeError)):
            GovernanceConfig().audit_denials = True
