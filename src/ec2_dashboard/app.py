from __future__ import annotations

import argparse
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from datetime import datetime

from textual import on, work
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical
from textual.css.query import NoMatches
from textual.screen import ModalScreen
from textual.widgets import Button, DataTable, Footer, Header, Input, Label, Log, Static
from textual.worker import Worker, WorkerState

from .aws_api import (
    STOP,
    TERMINATE,
    AwsEc2Service,
    Ec2Service,
    SimulatedEc2Service,
    describe_error,
)
from .config import DEFAULT_CONFIG_PATH, DEFAULT_DASHBOARD_CONFIG, DashboardConfig, load_dashboard_config
from .logging_config import configure_logging
from .models import Credentials, CredentialsError, InstanceSummary, LifecycleResult, RegionInstances

logger = logging.getLogger(__name__)

ServiceFactory = Callable[[Credentials, str], Ec2Service]

SCAN_WORKER = "scan-instances"
LIFECYCLE_WORKER = "change-instance-state"

ACTION_NOUNS = {STOP: "stop", TERMINATE: "termination"}


@dataclass(slots=True, frozen=True)
class ScanResult:
    regions: tuple[str, ...]
    results: tuple[RegionInstances, ...]

    @property
    def instances(self) -> list[InstanceSummary]:
        return [instance for result in self.results for instance in result.instances]

    @property
    def failed(self) -> list[RegionInstances]:
        return [result for result in self.results if not result.ok]


class ConfirmScreen(ModalScreen[bool]):
    BINDINGS = [Binding("escape", "cancel", "Cancel")]

    def __init__(self, title: str, message: str, *, confirm_label: str, variant: str = "warning") -> None:
        super().__init__()
        self.title_text = title
        self.body = message
        self.confirm_label = confirm_label
        self.confirm_variant = variant

    def compose(self) -> ComposeResult:
        with Vertical(id="confirm-modal"):
            yield Label(self.title_text, id="confirm-modal-title")
            yield Static(self.body, id="confirm-modal-body")
            with Horizontal(id="confirm-modal-buttons"):
                yield Button("Cancel", id="confirm-cancel")
                yield Button(self.confirm_label, variant=self.confirm_variant, id="confirm-accept")

    async def action_cancel(self) -> None:
        self.dismiss(False)

    async def on_button_pressed(self, event: Button.Pressed) -> None:
        self.dismiss(event.button.id == "confirm-accept")


class InstanceInfoScreen(ModalScreen[str | None]):
    BINDINGS = [
        Binding("escape", "close", "Close"),
        Binding("x", "stop", "Stop"),
        Binding("t", "terminate", "Terminate"),
    ]

    def __init__(self, instance: InstanceSummary) -> None:
        super().__init__()
        self.instance = instance

    def compose(self) -> ComposeResult:
        with Vertical(id="instance-info-modal"):
            yield Label(
                f"{self.instance.display_name} ({self.instance.instance_id})",
                id="instance-info-title",
            )
            yield Static(self._instance_meta_text(), id="instance-info-meta")
            with Horizontal(id="instance-info-actions"):
                yield Button("Stop", variant="warning", id="info-stop")
                yield Button("Terminate", variant="error", id="info-terminate")
                yield Button("Close", id="info-close")

    async def on_button_pressed(self, event: Button.Pressed) -> None:
        match event.button.id:
            case "info-stop":
                self.action_stop()
            case "info-terminate":
                self.action_terminate()
            case "info-close":
                self.action_close()

    def action_close(self) -> None:
        self.dismiss(None)

    def action_stop(self) -> None:
        self.dismiss(STOP)

    def action_terminate(self) -> None:
        self.dismiss(TERMINATE)

    def _instance_meta_text(self) -> str:
        instance = self.instance
        return "\n".join(
            (
                f"Region: {instance.region} | AZ: {instance.availability_zone or '-'}",
                f"State: {instance.state} | Type: {instance.instance_type}",
                f"Public IP: {instance.public_ip or 'None'} | Private IP: {instance.private_ip or 'None'}",
                f"Launch Time: {format_launch_time(instance.launch_time)}",
            )
        )


class Ec2DashboardApp(App[None]):
    CSS_PATH = "styles.tcss"
    TITLE = "EC2 Fleet Dashboard"
    SUB_TITLE = "Not connected"
    BINDINGS = [
        Binding("r", "refresh", "Refresh"),
        Binding("x", "stop_instance", "Stop"),
        Binding("t", "terminate_instance", "Terminate"),
        Binding("q", "quit", "Quit"),
    ]

    def __init__(
        self,
        *,
        config: DashboardConfig | None = None,
        service_factory: ServiceFactory | None = None,
        demo: bool = False,
    ) -> None:
        super().__init__()
        self.config = config or DEFAULT_DASHBOARD_CONFIG
        self.demo = demo
        if service_factory is not None:
            self.service_factory = service_factory
        elif demo:
            self.service_factory = _simulated_service_factory
        else:
            self.service_factory = _aws_service_factory
        self.credentials: Credentials | None = None
        self.service: Ec2Service | None = None
        self.regions: list[str] = []
        self.instances: list[InstanceSummary] = []
        self.pending_changes: dict[Worker, tuple[str, InstanceSummary]] = {}
        self.status_message = ""

    def compose(self) -> ComposeResult:
        yield Header()
        with Horizontal(id="credentials-bar"):
            yield Label("Account ID")
            yield Input(placeholder="123456789012", id="account-id")
            yield Label("Access Key ID")
            yield Input(placeholder="AKIA...", id="access-key-id")
            yield Label("Secret Access Key")
            yield Input(password=True, id="secret-access-key")
            yield Button("Connect", variant="primary", id="connect")
        with Horizontal(id="action-bar"):
            yield Button("Refresh", id="refresh")
            yield Button("Stop", variant="warning", id="stop")
            yield Button("Terminate", variant="error", id="terminate")
        yield DataTable(id="instance-table")
        yield Static("Enter AWS credentials and press Connect.", id="status")
        yield Log(highlight=False, max_lines=500, auto_scroll=True, id="activity-log")
        yield Footer()

    def on_mount(self) -> None:
        table = self.query_one("#instance-table", DataTable)
        table.cursor_type = "row"
        table.add_columns(
            "Region", "Name", "Instance ID", "State", "Type", "Public IP", "Private IP", "Launch Time"
        )
        if self.demo:
            self.query_one("#account-id", Input).value = "000000000000"
            self.query_one("#access-key-id", Input).value = "AKIADEMO"
            self.query_one("#secret-access-key", Input).value = "demo"
            self._log("Demo mode: using simulated EC2 data.")
        self._log("Credentials are kept in memory only and cleared on exit.")
        self._log("App started.")
        self.set_focus(self.query_one("#account-id", Input))

    async def on_input_submitted(self, event: Input.Submitted) -> None:
        if event.input.id in {"account-id", "access-key-id", "secret-access-key"}:
            self.action_connect()

    async def on_button_pressed(self, event: Button.Pressed) -> None:
        match event.button.id:
            case "connect":
                self.action_connect()
            case "refresh":
                self.action_refresh()
            case "stop":
                self.action_stop_instance()
            case "terminate":
                self.action_terminate_instance()

    def on_data_table_row_selected(self, event: DataTable.RowSelected) -> None:
        if event.data_table.id != "instance-table":
            return
        instance = self._selected_instance()
        if instance is None:
            return
        self.push_screen(
            InstanceInfoScreen(instance),
            callback=lambda action: self._on_info_dismissed(instance, action),
        )

    def action_connect(self) -> None:
        try:
            credentials = Credentials.from_form(
                self.query_one("#account-id", Input).value,
                self.query_one("#access-key-id", Input).value,
                self.query_one("#secret-access-key", Input).value,
            )
        except CredentialsError as error:
            self._show_error(str(error))
            return

        self.credentials = credentials
        self.service = self.service_factory(credentials, self.config.bootstrap_region)
        self.regions = []
        self.sub_title = f"Account {credentials.account_id}"
        self._set_loading(True)
        self._set_status("Connecting to AWS...")
        self._log(
            f"Connecting with key {_mask(credentials.access_key_id)} "
            f"(account {credentials.account_id}, bootstrap region {self.config.bootstrap_region})."
        )
        self.scan_instances(self.service)

    def action_refresh(self) -> None:
        if self._modal_open():
            return
        if self.service is None:
            self.notify("Connect with AWS credentials first.", severity="warning")
            self._log("Refresh requested before connecting.")
            return
        self.refresh_instances()

    def refresh_instances(self) -> None:
        if self.service is None:
            return
        self._set_loading(True)
        self._set_status(f"Refreshing instances across {len(self.regions)} regions...")
        self._log("Refreshing instance list.")
        self.scan_instances(self.service, self.regions)

    def action_stop_instance(self) -> None:
        instance = self._instance_for_action("Stop")
        if instance is not None:
            self.request_stop(instance)

    def action_terminate_instance(self) -> None:
        instance = self._instance_for_action("Terminate")
        if instance is not None:
            self.request_terminate(instance)

    async def action_quit(self) -> None:
        self.credentials = None
        self.service = None
        self.exit()

    def request_stop(self, instance: InstanceSummary) -> None:
        self.push_screen(
            ConfirmScreen(
                "Stop instance",
                f"Are you sure you want to stop instance {instance.instance_id} in {instance.region}?",
                confirm_label="Stop",
            ),
            callback=lambda confirmed: self._on_change_confirmed(STOP, instance, confirmed),
        )

    def request_terminate(self, instance: InstanceSummary) -> None:
        self.push_screen(
            ConfirmScreen(
                "Terminate instance",
                f"WARNING: Are you absolutely sure you want to TERMINATE instance "
                f"{instance.instance_id} in {instance.region}? This action cannot be undone!",
                confirm_label="Terminate",
                variant="error",
            ),
            callback=lambda confirmed: self._on_terminate_warning(instance, confirmed),
        )

    def _on_terminate_warning(self, instance: InstanceSummary, confirmed: bool | None) -> None:
        if not confirmed:
            self._log(f"Termination of {instance.instance_id} cancelled.")
            return
        self.push_screen(
            ConfirmScreen(
                "Final warning",
                f"FINAL WARNING: Terminating instance {instance.instance_id} will permanently "
                "delete it and all its data. Continue?",
                confirm_label="Terminate permanently",
                variant="error",
            ),
            callback=lambda confirmed: self._on_change_confirmed(TERMINATE, instance, confirmed),
        )

    def _on_info_dismissed(self, instance: InstanceSummary, action: str | None) -> None:
        if action == STOP:
            self.request_stop(instance)
        elif action == TERMINATE:
            self.request_terminate(instance)

    def _on_change_confirmed(self, action: str, instance: InstanceSummary, confirmed: bool | None) -> None:
        if not confirmed:
            self._log(f"{action.capitalize()} of {instance.instance_id} cancelled.")
            return
        if self.service is None:
            self._show_error("Connect with AWS credentials first.")
            return
        self._set_status(f"Requesting {ACTION_NOUNS[action]} of {instance.instance_id} in {instance.region}...")
        self._log(f"Requesting {ACTION_NOUNS[action]} of {instance.instance_id} in {instance.region}.")
        worker = self.change_instance_state(self.service, action, instance)
        self.pending_changes[worker] = (action, instance)

    @work(thread=True, exclusive=True, exit_on_error=False, group="scan", name=SCAN_WORKER)
    def scan_instances(self, service: Ec2Service, regions: Sequence[str] | None = None) -> ScanResult:
        discovered = list(regions) if regions else service.list_regions()
        selected = self.config.select_regions(discovered)
        results = service.scan_regions(selected, self.config.instance_states)
        return ScanResult(regions=tuple(discovered), results=tuple(results))

    @work(thread=True, exit_on_error=False, group="lifecycle", name=LIFECYCLE_WORKER)
    def change_instance_state(self, service: Ec2Service, action: str, instance: InstanceSummary) -> LifecycleResult:
        if action == STOP:
            return service.stop_instance(instance.instance_id, instance.region)
        return service.terminate_instance(instance.instance_id, instance.region)

    @on(Worker.StateChanged)
    def on_worker_state_changed(self, event: Worker.StateChanged) -> None:
        if event.worker.name == SCAN_WORKER:
            self._on_scan_state(event.worker)
        elif event.worker.name == LIFECYCLE_WORKER:
            self._on_change_state(event.worker)

    def _on_scan_state(self, worker: Worker) -> None:
        if worker.state == WorkerState.SUCCESS:
            result = worker.result
            if isinstance(result, ScanResult):
                self._apply_scan(result)
            return

        if worker.state == WorkerState.ERROR:
            self._set_loading(False)
            self.instances = []
            self._render_instances()
            self._show_error(f"Error connecting to AWS: {describe_error(worker.error)}")
            return

        if worker.state == WorkerState.CANCELLED and not self._scan_in_progress():
            self._set_loading(False)

    def _on_change_state(self, worker: Worker) -> None:
        if not worker.is_finished:
            return
        change = self.pending_changes.pop(worker, None)
        if change is None or worker.state == WorkerState.CANCELLED:
            return
        action, instance = change

        if worker.state == WorkerState.ERROR:
            verb = "stop" if action == STOP else "terminate"
            self._show_error(f"Failed to {verb} instance: {describe_error(worker.error)}")
            return

        result = worker.result
        message = f"Successfully initiated {ACTION_NOUNS[action]} for instance {instance.instance_id}"
        self.notify(message, severity="information")
        if isinstance(result, LifecycleResult):
            self._log(f"{message} ({result.previous_state} -> {result.current_state}).")
        else:
            self._log(f"{message}.")
        self.refresh_instances()

    def _apply_scan(self, result: ScanResult) -> None:
        self.regions = list(result.regions)
        self.instances = result.instances
        self._render_instances()
        self._set_loading(False)

        scanned = len(result.results)
        failed = result.failed
        for region_result in failed:
            self._log(f"Error fetching instances from {region_result.region}: {region_result.error}")

        label = _states_label(self.config.instance_states)
        if not self.instances:
            status = f"No {label} instances found in any region."
        else:
            populated = sum(1 for region_result in result.results if region_result.instances)
            status = f"Found {len(self.instances)} {label} instances in {populated} of {scanned} regions."
        if failed:
            status = f"{status} {len(failed)} regions could not be listed."
        self._set_status(status)
        self._log(f"Scanned {scanned} regions: {len(self.instances)} {label} instances.")
        self.set_focus(self.query_one("#instance-table", DataTable))

    def _instance_for_action(self, verb: str) -> InstanceSummary | None:
        if self._modal_open():
            return None
        instance = self._selected_instance()
        if instance is None:
            self.notify("Select an EC2 instance first", severity="warning")
            self._log(f"{verb} requested with no selected instance.")
        return instance

    def _selected_instance(self) -> InstanceSummary | None:
        table = self.query_one("#instance-table", DataTable)
        try:
            row = table.cursor_row
            if row < 0:
                raise IndexError
            return self.instances[row]
        except IndexError:
            return None

    def _render_instances(self) -> None:
        table = self.query_one("#instance-table", DataTable)
        table.clear(columns=False)
        for instance in self.instances:
            table.add_row(
                instance.region,
                instance.display_name,
                instance.instance_id,
                instance.state,
                instance.instance_type,
                instance.public_ip or "None",
                instance.private_ip or "None",
                format_launch_time(instance.launch_time),
            )
        if self.instances:
            table.move_cursor(row=0, column=0)

    def _scan_in_progress(self) -> bool:
        return any(worker.name == SCAN_WORKER and not worker.is_finished for worker in self.workers)

    def _modal_open(self) -> bool:
        return isinstance(self.screen, ModalScreen)

    def _set_loading(self, loading: bool) -> None:
        try:
            self.query_one("#instance-table", DataTable).loading = loading
            self.query_one("#connect", Button).disabled = loading
        except NoMatches:
            return

    def _show_error(self, message: str) -> None:
        self.notify(message, severity="error")
        self._set_status(message)
        self._log(message)

    def _set_status(self, message: str) -> None:
        self.status_message = message
        try:
            self.query_one("#status", Static).update(message)
        except NoMatches:
            return

    def _log(self, message: str) -> None:
        logger.info(message)
        timestamp = datetime.now().strftime("%H:%M:%S")
        try:
            self.query_one("#activity-log", Log).write_line(f"[{timestamp}] {message}")
        except NoMatches:
            return


def format_launch_time(value: datetime | None) -> str:
    if value is None:
        return "-"
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _states_label(states: Sequence[str]) -> str:
    return "/".join(states) or "running"


def _mask(access_key_id: str) -> str:
    if len(access_key_id) <= 4:
        return "****"
    return f"****{access_key_id[-4:]}"


def _aws_service_factory(credentials: Credentials, bootstrap_region: str) -> Ec2Service:
    return AwsEc2Service(credentials, bootstrap_region=bootstrap_region)


def _simulated_service_factory(credentials: Credentials, bootstrap_region: str) -> Ec2Service:
    return SimulatedEc2Service()


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="EC2 fleet dashboard (Textual)")
    parser.add_argument(
        "--config",
        default=str(DEFAULT_CONFIG_PATH),
        help="YAML file with bootstrap region, instance states and region allow-list",
    )
    parser.add_argument(
        "--bootstrap-region",
        default=None,
        help="Region used to discover the other regions (overrides the config file)",
    )
    parser.add_argument("--demo", action="store_true", help="Use simulated EC2 data instead of AWS")
    parser.add_argument("--log-file", default=None, help="Write diagnostic logs to this file")
    parser.add_argument("--log-level", default="INFO", help="Log level for --log-file")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> None:
    args = parse_args(argv)
    configure_logging(args.log_level, args.log_file)
    config = load_dashboard_config(args.config)
    if args.bootstrap_region:
        config = replace(config, bootstrap_region=args.bootstrap_region.strip())
    app = Ec2DashboardApp(config=config, demo=args.demo)
    try:
        app.run()
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
