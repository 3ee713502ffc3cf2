"""Test sequential plan execution."""

import threading
from unittest.mock import MagicMock

from server_restore.errors import FilePlacementFailure, PackageInstallFailure
from server_restore.executor import Executor
from server_restore.host import LocalFilePlacer
from server_restore.models import ActionKind, ActionOutcome, ReportStatus, RestorationAction


def five_action_plan(third_required):
    return (
        RestorationAction(kind=ActionKind.INSTALL_PACKAGE, target="nginx", required=False),
        RestorationAction(kind=ActionKind.INSTALL_PACKAGE, target="postgresql", required=False),
        RestorationAction(
            kind=ActionKind.PLACE_FILE,
            target="/etc/nginx/nginx.conf",
            payload_ref="/staging/root/etc/nginx/nginx.conf",
            required=third_required,
        ),
        RestorationAction(kind=ActionKind.RESTART_SERVICE, target="postgresql"),
        RestorationAction(kind=ActionKind.RESTART_SERVICE, target="nginx"),
    )


class TestExecutor:
    """Test Executor failure policy."""

    def setup_method(self):
        """Setup mock host collaborators."""
        self.packages = MagicMock()
        self.services = MagicMock()
        self.files = MagicMock()
        self.commands = MagicMock()

    def make_executor(self, cancel_event=None):
        return Executor(
            packages=self.packages,
            services=self.services,
            files=self.files,
            commands=self.commands,
            cancel_event=cancel_event,
        )

    def test_all_actions_succeed(self):
        report = self.make_executor().execute(five_action_plan(third_required=True))

        assert report.overall_status is ReportStatus.SUCCEEDED
        assert len(report.action_results) == 5
        assert self.services.restart.call_count == 2

    def test_required_failure_aborts_remaining_actions(self):
        self.files.place.side_effect = FilePlacementFailure("Permission denied")

        report = self.make_executor().execute(five_action_plan(third_required=True))

        assert report.overall_status is ReportStatus.ABORTED
        assert len(report.action_results) == 3
        assert report.action_results[2].outcome is ActionOutcome.FAILED
        assert report.action_results[2].error == "Permission denied"
        self.services.restart.assert_not_called()

    def test_optional_failure_continues(self):
        self.files.place.side_effect = FilePlacementFailure("Permission denied")

        report = self.make_executor().execute(five_action_plan(third_required=False))

        assert report.overall_status is ReportStatus.COMPLETED_WITH_ERRORS
        assert len(report.action_results) == 5
        assert len(report.failures) == 1
        assert report.required_failures == ()
        assert self.services.restart.call_count == 2

    def test_package_failures_are_optional(self):
        self.packages.install.side_effect = PackageInstallFailure("E: Unable to locate package")

        report = self.make_executor().execute(five_action_plan(third_required=True))

        assert report.overall_status is ReportStatus.COMPLETED_WITH_ERRORS
        assert [r.outcome for r in report.action_results[:2]] == [ActionOutcome.FAILED, ActionOutcome.FAILED]
        assert len(report.action_results) == 5

    def test_unexpected_exception_is_recorded(self):
        self.services.restart.side_effect = RuntimeError("boom")

        report = self.make_executor().execute(five_action_plan(third_required=True))

        assert report.overall_status is ReportStatus.ABORTED
        assert report.action_results[-1].error == "RuntimeError: boom"

    def test_cancelled_before_start(self):
        event = threading.Event()
        event.set()

        report = self.make_executor(event).execute(five_action_plan(third_required=True))

        assert report.overall_status is ReportStatus.CANCELLED
        assert report.action_results == ()
        self.packages.install.assert_not_called()

    def test_cancel_takes_effect_between_actions(self):
        event = threading.Event()
        self.packages.install.side_effect = lambda name: event.set()

        report = self.make_executor(event).execute(five_action_plan(third_required=True))

        assert report.overall_status is ReportStatus.CANCELLED
        assert len(report.action_results) == 1
        assert report.action_results[0].outcome is ActionOutcome.SUCCEEDED

    def test_run_command_dispatch(self):
        action = RestorationAction(kind=ActionKind.RUN_COMMAND, target="systemctl daemon-reload")

        self.make_executor().execute([action])

        self.commands.run.assert_called_once_with("systemctl daemon-reload")

    def test_report_carries_verification_flag(self):
        report = self.make_executor().execute([], verified=False)

        assert report.unverified is True
        assert report.overall_status is ReportStatus.SUCCEEDED

    def test_rerun_is_idempotent(self, tmp_path, make_tree):
        """Executing the same plan twice leaves the host in the same state."""
        tree = make_tree({"etc/nginx/nginx.conf": "events {}", "root/.env": "KEY=1"})
        host_root = tmp_path / "host"
        plan = tuple(
            RestorationAction(
                kind=ActionKind.PLACE_FILE,
                target=f"/{relative}",
                payload_ref=str(tree.path(relative)),
            )
            for relative in ("etc/nginx/nginx.conf", "root/.env")
        )
        executor = Executor(
            packages=self.packages,
            services=self.services,
            files=LocalFilePlacer(root_dir=host_root),
            commands=self.commands,
        )

        first = executor.execute(plan)
        second = executor.execute(plan)

        assert first.overall_status is ReportStatus.SUCCEEDED
        assert second.required_failures == ()
        assert (host_root / "etc/nginx/nginx.conf").read_text() == "events {}"
        assert (host_root / "root/.env").read_text() == "KEY=1"
        assert sorted(p.name for p in (host_root / "root").iterdir()) == [".env"]
