"""Collect Powerwall state as Prometheus metric families on every scrape."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Sequence, Set, Tuple

from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric

from powerwall_exporter import util
from powerwall_exporter.client import PowerwallError, TransportError

CONSOLE = util.CONSOLE

EXPORTER_NAME = "powerwall"

GAUGE = "gauge"
COUNTER = "counter"

# Gateway energy values are converted to joules with this factor
JOULES_PER_UNIT = 3600

AGGREGATE_LABELS = ["category"]
DEVICE_METER_LABELS = ["category", "type", "serial"]
NETWORK_LABELS = ["type", "name"]


@dataclass(frozen=True)
class Descriptor:
    name: str
    help: str
    labelnames: Tuple[str, ...]
    kind: str = GAUGE

    @property
    def fqname(self) -> str:
        return f"{EXPORTER_NAME}_{self.name}"

    def family(self) -> Metric:
        if self.kind == COUNTER:
            return CounterMetricFamily(self.fqname, self.help, labels=self.labelnames)
        return GaugeMetricFamily(self.fqname, self.help, labels=self.labelnames)


class MetricSink:
    """Samples emitted during one scrape.

    ``collect()`` makes the sink usable as a registry for
    ``prometheus_client.generate_latest``.
    """

    def __init__(self, descriptors: Dict[str, Descriptor]) -> None:
        self._descriptors = descriptors
        self._families: Dict[str, Metric] = {}
        self._seen: Dict[str, Set[Tuple[str, ...]]] = {}
        self.samples = 0

    def _add(self, kind: str, name: str, value: float, labels: Sequence[str]) -> None:
        desc = self._descriptors[name]
        if desc.kind != kind:
            raise ValueError(f"Metric {desc.fqname} is a {desc.kind}, not a {kind}")
        if len(labels) != len(desc.labelnames):
            raise ValueError(
                f"Metric {desc.fqname} expects {len(desc.labelnames)} label values "
                f"{list(desc.labelnames)}, got {len(labels)}"
            )
        label_values = tuple(str(label) for label in labels)
        seen = self._seen.setdefault(name, set())
        if label_values in seen:
            CONSOLE.debug(
                "Skipping duplicate sample",
                extra={"fields": {"metric": desc.fqname, "labels": ",".join(label_values)}},
            )
            return
        seen.add(label_values)
        family = self._families.get(name)
        if family is None:
            family = self._families[name] = desc.family()
        family.add_metric(list(label_values), float(value))
        self.samples += 1

    def gauge(self, name: str, value: float, *labels: str) -> None:
        self._add(GAUGE, name, value, labels)

    def gauge_bool(self, name: str, value: bool, *labels: str) -> None:
        self._add(GAUGE, name, 1.0 if value else 0.0, labels)

    def counter(self, name: str, value: float, *labels: str) -> None:
        self._add(COUNTER, name, value, labels)

    def collect(self) -> List[Metric]:
        return list(self._families.values())


Step = Callable[[MetricSink], Awaitable[None]]


class PowerwallCollector:
    def __init__(self, client: Any) -> None:
        self.pw = client
        self.metrics: Dict[str, Descriptor] = {}

        self._new_desc("info", "Device Information", ["version", "git_hash"])
        self._new_desc("uptime_seconds", "Seconds since last reboot")
        self._new_desc("commission_count", "Number of config changes since last reboot")
        self._new_desc("charge_ratio", "Total amount of charge")
        self._new_desc("reserve_ratio", "Amount of charge reserved for backup use")
        self._new_desc("operation_mode", "Operational Mode", ["mode"])
        self._new_desc("sitemaster_running", "Is powerwall in running or stopped state?")
        self._new_desc("sitemaster_connected", "Is powerwall connected to Tesla?")
        self._new_desc("power_supply_mode", "Is powerwall in 'power supply' mode?")
        self._new_desc(
            "sitemaster_busy",
            "Is sitemaster performing some operation which should not be interrupted by stop/reboot?",
            ["reason"],
        )
        self._new_desc("problems_detected_count", "Number of problems currently reported")

        # system status
        self._new_desc("full_pack_joules", "Total capacity of all batteries")
        self._new_desc("remaining_joules", "Remaining charge in all batteries")
        self._new_desc(
            "island_state", "Whether powerwall is running in island mode or connected to grid", ["state"]
        )

        # battery blocks
        self._new_desc("battery_info", "Battery Information", ["serial", "partno", "version"])
        self._new_desc("battery_full_pack_joules", "Total battery capacity", ["serial"])
        self._new_desc("battery_remaining_joules", "Remaining charge", ["serial"])
        self._new_desc("battery_output_volts", "Battery voltage", ["serial"])
        self._new_desc(
            "battery_output_amps",
            "Battery current flow (positive is discharging, negative is charging)",
            ["serial"],
        )
        self._new_desc("battery_output_hz", "Battery output frequency", ["serial"])
        self._new_desc(
            "battery_charged_joules_total",
            "Total amount of energy charged over battery's lifetime",
            ["serial"],
            COUNTER,
        )
        self._new_desc(
            "battery_discharged_joules_total",
            "Total amount of energy discharged over battery's lifetime",
            ["serial"],
            COUNTER,
        )
        self._new_desc("battery_off_grid", "Is battery disconnected from the grid?", ["serial"])
        self._new_desc("battery_island_state", "Is battery running in islanded state?", ["serial"])
        self._new_desc("battery_wobble_detected", "Is frequency wobble detected?", ["serial"])
        self._new_desc("battery_charge_power_clamped", "Has charging power been clamped?", ["serial"])
        self._new_desc("battery_backup_ready", "Is battery available for backup use?", ["serial"])
        self._new_desc("battery_pinv_state", "Battery power inverter state", ["serial", "state"])
        self._new_desc("battery_pinv_grid_state", "Battery power grid state", ["serial", "state"])
        self._new_desc("battery_opseq_state", "Battery operation sequence state", ["serial", "state"])

        # meter aggregates, and the same readings per meter device
        for prefix, labels in (("", AGGREGATE_LABELS), ("dev_", DEVICE_METER_LABELS)):
            self._new_desc(f"{prefix}instant_power_watts", "Instant Power (W)", labels)
            self._new_desc(f"{prefix}instant_reactive_power_watts", "Instant Reactive Power (W)", labels)
            self._new_desc(f"{prefix}instant_apparent_power_watts", "Instant Apparent Power (W)", labels)
            self._new_desc(f"{prefix}frequency_hz", "AC Frequency (Hz)", labels)
            self._new_desc(f"{prefix}exported_joules_total", "Energy Exported", labels, COUNTER)
            self._new_desc(f"{prefix}imported_joules_total", "Energy Imported", labels, COUNTER)
            self._new_desc(f"{prefix}instant_average_volts", "Instant Average Voltage", labels)
            self._new_desc(f"{prefix}instant_average_amps", "Instant Average Current", labels)
            self._new_desc(f"{prefix}instant_total_amps", "Instant Total Current", labels)

        # network interfaces
        self._new_desc("network_enabled", "Is network interface enabled?", NETWORK_LABELS)
        self._new_desc("network_active", "Is network interface active?", NETWORK_LABELS)
        self._new_desc("network_primary", "Is this the primary network interface?", NETWORK_LABELS)
        self._new_desc(
            "network_state",
            "Current state and reason for last state change",
            NETWORK_LABELS + ["state", "reason"],
        )
        self._new_desc("network_signal_strength", "Wireless signal strength", NETWORK_LABELS)

        self.steps: List[Tuple[str, Step]] = [
            ("status", self._collect_status),
            ("SOE", self._collect_soe),
            ("operation", self._collect_operation),
            ("sitemaster", self._collect_sitemaster),
            ("troubleshooting problems", self._collect_problems),
            ("system_status", self._collect_system_status),
            ("meter aggregates", self._collect_meters),
            ("networks", self._collect_networks),
        ]

    def _new_desc(
        self, name: str, help_text: str, labelnames: Sequence[str] = (), kind: str = GAUGE
    ) -> Descriptor:
        desc = Descriptor(name, help_text, tuple(labelnames), kind)
        self.metrics[name] = desc
        return desc

    def describe(self) -> List[Metric]:
        return [desc.family() for desc in self.metrics.values()]

    async def collect(self) -> MetricSink:
        """Run every collection step once; failures leave their metrics out."""
        CONSOLE.debug("Collecting metrics...")
        start = time.monotonic()
        sink = MetricSink(self.metrics)
        failed = 0
        for what, step in self.steps:
            try:
                await step(sink)
            except TransportError as err:
                failed += 1
                CONSOLE.error("Error fetching %s info", what, extra={"fields": {"err": str(err)}})
                break
            except PowerwallError as err:
                failed += 1
                CONSOLE.error("Error fetching %s info", what, extra={"fields": {"err": str(err)}})
        CONSOLE.debug(
            "Collection finished",
            extra={
                "fields": {
                    "samples": sink.samples,
                    "failed_steps": failed,
                    "duration": round(time.monotonic() - start, 3),
                }
            },
        )
        return sink

    async def _collect_status(self, sink: MetricSink) -> None:
        status = await self.pw.get_status()
        sink.gauge("info", 1, status.version, status.git_hash)
        sink.gauge("uptime_seconds", status.up_time)
        sink.gauge("commission_count", status.commission_count)

    async def _collect_soe(self, sink: MetricSink) -> None:
        soe = await self.pw.get_state_of_energy()
        sink.gauge("charge_ratio", soe.percentage / 100)

    async def _collect_operation(self, sink: MetricSink) -> None:
        opdata = await self.pw.get_operation()
        sink.gauge("operation_mode", 1, opdata.real_mode)
        sink.gauge("reserve_ratio", opdata.backup_reserve_percent / 100)

    async def _collect_sitemaster(self, sink: MetricSink) -> None:
        sitemaster = await self.pw.get_sitemaster()
        sink.gauge_bool("sitemaster_running", sitemaster.running)
        sink.gauge_bool("sitemaster_connected", sitemaster.connected_to_tesla)
        sink.gauge_bool("power_supply_mode", sitemaster.power_supply_mode)
        if sitemaster.can_reboot != "Yes":
            sink.gauge("sitemaster_busy", 1, sitemaster.can_reboot)

    async def _collect_problems(self, sink: MetricSink) -> None:
        problems = await self.pw.get_problems()
        sink.gauge("problems_detected_count", len(problems.problems))

    async def _collect_system_status(self, sink: MetricSink) -> None:
        sysstatus = await self.pw.get_system_status()
        sink.gauge("full_pack_joules", sysstatus.nominal_full_pack_energy * JOULES_PER_UNIT)
        sink.gauge("remaining_joules", sysstatus.nominal_energy_remaining * JOULES_PER_UNIT)
        sink.gauge("island_state", 1, sysstatus.system_island_state)

        for block in sysstatus.battery_blocks:
            serial = block.serial
            sink.gauge("battery_info", 1, serial, block.part_number, block.version)
            sink.gauge("battery_full_pack_joules", block.nominal_full_pack_energy * JOULES_PER_UNIT, serial)
            sink.gauge("battery_remaining_joules", block.nominal_energy_remaining * JOULES_PER_UNIT, serial)
            sink.gauge("battery_output_volts", block.v_out, serial)
            sink.gauge("battery_output_amps", block.i_out, serial)
            sink.gauge("battery_output_hz", block.f_out, serial)
            sink.counter("battery_charged_joules_total", block.energy_charged * JOULES_PER_UNIT, serial)
            sink.counter("battery_discharged_joules_total", block.energy_discharged * JOULES_PER_UNIT, serial)
            sink.gauge_bool("battery_off_grid", block.off_grid, serial)
            sink.gauge_bool("battery_island_state", block.vf_mode, serial)
            sink.gauge_bool("battery_wobble_detected", block.wobble_detected, serial)
            sink.gauge_bool("battery_charge_power_clamped", block.charge_power_clamped, serial)
            sink.gauge_bool("battery_backup_ready", block.backup_ready, serial)
            sink.gauge("battery_pinv_state", 1, serial, block.pinv_state)
            sink.gauge("battery_pinv_grid_state", 1, serial, block.pinv_grid_state)
            sink.gauge("battery_opseq_state", 1, serial, block.opseq_state)

    @staticmethod
    def _emit_readings(sink: MetricSink, prefix: str, data: Any, *labels: str) -> None:
        sink.gauge(f"{prefix}instant_power_watts", data.instant_power, *labels)
        sink.gauge(f"{prefix}instant_reactive_power_watts", data.instant_reactive_power, *labels)
        sink.gauge(f"{prefix}instant_apparent_power_watts", data.instant_apparent_power, *labels)
        # 0 Hz means the meter does not report frequency
        if data.frequency != 0:
            sink.gauge(f"{prefix}frequency_hz", data.frequency, *labels)
        sink.counter(f"{prefix}exported_joules_total", data.energy_exported * JOULES_PER_UNIT, *labels)
        sink.counter(f"{prefix}imported_joules_total", data.energy_imported * JOULES_PER_UNIT, *labels)
        sink.gauge(f"{prefix}instant_average_volts", data.instant_average_voltage, *labels)
        sink.gauge(f"{prefix}instant_average_amps", data.instant_average_current, *labels)
        sink.gauge(f"{prefix}instant_total_amps", data.instant_total_current, *labels)

    async def _collect_meters(self, sink: MetricSink) -> None:
        aggs = await self.pw.get_meter_aggregates()
        for cat, data in aggs.items():
            self._emit_readings(sink, "", data, cat)

            try:
                devs = await self.pw.get_meters(cat)
            except PowerwallError as err:
                CONSOLE.error(
                    "Error fetching detailed meter info", extra={"fields": {"cat": cat, "err": str(err)}}
                )
                continue
            for dev in devs:
                self._emit_readings(sink, "dev_", dev.readings, cat, dev.type, dev.device_serial)

    async def _collect_networks(self, sink: MetricSink) -> None:
        nets = await self.pw.get_networks()
        for net in nets:
            name = net.network_name
            nettype = net.interface
            sink.gauge_bool("network_enabled", net.enabled, nettype, name)
            sink.gauge_bool("network_active", net.active, nettype, name)
            sink.gauge_bool("network_primary", net.primary, nettype, name)
            iface = net.iface_network_info
            if iface.network_name:
                sink.gauge("network_state", 1, nettype, name, iface.state, iface.state_reason)
                if iface.signal_strength != 0:
                    sink.gauge("network_signal_strength", iface.signal_strength, nettype, name)
