import asyncio

import pytest
from prometheus_client import generate_latest

from powerwall_exporter import collector, models
from powerwall_exporter.client import ApiError, TransportError


def _reading(**overrides):
    values = dict(
        instant_power=1234.5,
        instant_reactive_power=-12.0,
        instant_apparent_power=1300.0,
        frequency=60.01,
        energy_exported=100.0,
        energy_imported=200.0,
        instant_average_voltage=240.2,
        instant_average_current=5.5,
        instant_total_current=11.0,
    )
    values.update(overrides)
    return models.MeterReading(**values)


class FakeClient:
    def __init__(self, mocker):
        self.get_status = mocker.AsyncMock(
            return_value=models.Status(
                version="23.12.10", git_hash="abc123", up_time=3600.0, commission_count=4
            )
        )
        self.get_state_of_energy = mocker.AsyncMock(return_value=models.StateOfEnergy(percentage=55.0))
        self.get_operation = mocker.AsyncMock(
            return_value=models.Operation(real_mode="self_consumption", backup_reserve_percent=20.0)
        )
        self.get_sitemaster = mocker.AsyncMock(
            return_value=models.Sitemaster(
                status="StatusUp",
                running=True,
                connected_to_tesla=False,
                power_supply_mode=False,
                can_reboot="Power flow is too high",
            )
        )
        self.get_problems = mocker.AsyncMock(return_value=models.Problems(problems=[]))
        self.get_system_status = mocker.AsyncMock(
            return_value=models.SystemStatus(
                nominal_full_pack_energy=10.0,
                nominal_energy_remaining=5.0,
                system_island_state="SystemGridConnected",
                battery_blocks=[
                    models.BatteryBlock(
                        serial="TG1",
                        part_number="3012170-05-C",
                        version="b0ec24329c08e4",
                        nominal_full_pack_energy=14000.0,
                        nominal_energy_remaining=7000.0,
                        v_out=240.5,
                        i_out=-3.2,
                        f_out=60.0,
                        energy_charged=1000.0,
                        energy_discharged=900.0,
                        off_grid=False,
                        vf_mode=False,
                        wobble_detected=False,
                        charge_power_clamped=True,
                        backup_ready=True,
                        pinv_state="PINV_GridFollowing",
                        pinv_grid_state="Grid_Compliant",
                        opseq_state="Active",
                    ),
                    models.BatteryBlock(serial="TG2", part_number="3012170-05-C", version="b0ec24329c08e4"),
                ],
            )
        )
        self.get_meter_aggregates = mocker.AsyncMock(
            return_value={"solar": _reading(), "load": _reading(instant_power=800.0)}
        )
        self.meters = {
            "solar": [models.Meter(type="neurio", device_serial="OBB1", readings=_reading())],
            "load": [models.Meter(type="synchrometerX", device_serial="SYN1", readings=_reading())],
        }
        self.get_meters = mocker.AsyncMock(side_effect=lambda cat: self.meters[cat])
        self.get_networks = mocker.AsyncMock(
            return_value=[
                models.Network(
                    network_name="ethernet_tesla_internal_default",
                    interface="EthType",
                    enabled=True,
                    active=True,
                    primary=True,
                    iface_network_info=models.NetworkInfo(
                        network_name="ethernet_tesla_internal_default",
                        state="DeviceStateReady",
                        state_reason="DeviceStateReasonNone",
                        signal_strength=0,
                    ),
                ),
                models.Network(
                    network_name="wifi_home",
                    interface="WifiType",
                    enabled=True,
                    active=False,
                    primary=False,
                    iface_network_info=models.NetworkInfo(
                        network_name="home",
                        state="DeviceStateReady",
                        state_reason="DeviceStateReasonNone",
                        signal_strength=63,
                    ),
                ),
                models.Network(network_name="gsm", interface="GsmType", enabled=False),
            ]
        )


@pytest.fixture
def fake(mocker):
    return FakeClient(mocker)


def _scrape(client):
    return asyncio.run(collector.PowerwallCollector(client).collect())


def _names(sink):
    return {family.name for family in sink.collect()}


def _value(sink, name, *labels):
    """Value of the sample ``powerwall_<name>`` with these label values, or None."""
    fqname = f"{collector.EXPORTER_NAME}_{name}"
    for family in sink.collect():
        for sample in family.samples:
            if sample.name == fqname and tuple(sample.labels.values()) == labels:
                return sample.value
    return None


def _series(sink, name):
    fqname = f"{collector.EXPORTER_NAME}_{name}"
    return [
        tuple(sample.labels.values())
        for family in sink.collect()
        for sample in family.samples
        if sample.name == fqname
    ]


def test_every_registered_metric_is_emitted_with_matching_labels(fake):
    pwc = collector.PowerwallCollector(fake)
    sink = asyncio.run(pwc.collect())

    emitted = {family.name for family in sink.collect()}
    for desc in pwc.metrics.values():
        family_name = desc.fqname[: -len("_total")] if desc.kind == collector.COUNTER else desc.fqname
        assert family_name in emitted, desc.name
    for family in sink.collect():
        desc_labels = {tuple(d.labelnames) for d in pwc.metrics.values()}
        for sample in family.samples:
            assert tuple(sample.labels) in desc_labels


def test_registry_has_all_metrics(fake):
    pwc = collector.PowerwallCollector(fake)
    assert len(pwc.metrics) == 53
    described = pwc.describe()
    assert len(described) == 53
    assert all(family.name.startswith("powerwall_") for family in described)
    assert all(not family.samples for family in described)
    assert pwc.metrics["dev_instant_power_watts"].labelnames == ("category", "type", "serial")
    assert pwc.metrics["network_state"].labelnames == ("type", "name", "state", "reason")


def test_charge_ratio_is_fraction(fake):
    sink = _scrape(fake)
    assert _value(sink, "charge_ratio") == 0.55
    assert _value(sink, "reserve_ratio") == 0.2


def test_energy_converted_to_joules(fake):
    sink = _scrape(fake)
    assert _value(sink, "full_pack_joules") == 36000.0
    assert _value(sink, "remaining_joules") == 18000.0
    assert _value(sink, "battery_full_pack_joules", "TG1") == 14000.0 * 3600
    assert _value(sink, "battery_charged_joules_total", "TG1") == 3600000.0
    assert _value(sink, "battery_discharged_joules_total", "TG1") == 3240000.0
    assert _value(sink, "exported_joules_total", "solar") == 360000.0
    assert _value(sink, "dev_imported_joules_total", "load", "synchrometerX", "SYN1") == 720000.0


def test_status_metrics(fake):
    sink = _scrape(fake)
    assert _value(sink, "info", "23.12.10", "abc123") == 1.0
    assert _value(sink, "uptime_seconds") == 3600.0
    assert _value(sink, "commission_count") == 4.0
    assert _value(sink, "operation_mode", "self_consumption") == 1.0


def test_booleans_are_always_emitted(fake):
    sink = _scrape(fake)
    assert _value(sink, "sitemaster_running") == 1.0
    assert _value(sink, "sitemaster_connected") == 0.0
    assert _value(sink, "power_supply_mode") == 0.0
    assert _value(sink, "battery_off_grid", "TG2") == 0.0
    assert _value(sink, "battery_charge_power_clamped", "TG1") == 1.0
    assert _value(sink, "network_active", "WifiType", "wifi_home") == 0.0


def test_sitemaster_busy_not_emitted_when_can_reboot(fake):
    fake.get_sitemaster.return_value = models.Sitemaster(running=True, can_reboot="Yes")
    sink = _scrape(fake)
    assert "powerwall_sitemaster_busy" not in _names(sink)
    assert _value(sink, "sitemaster_running") == 1.0


@pytest.mark.parametrize("reason", ["", "Power flow is too high", "No", "yes"])
def test_sitemaster_busy_reports_reason(fake, reason):
    fake.get_sitemaster.return_value = models.Sitemaster(can_reboot=reason)
    sink = _scrape(fake)
    assert _value(sink, "sitemaster_busy", reason) == 1.0


def test_problems_count_zero_is_emitted(fake):
    sink = _scrape(fake)
    assert _value(sink, "problems_detected_count") == 0.0


def test_problems_count(fake):
    fake.get_problems.return_value = models.Problems(problems=[{"name": "a"}, {"name": "b"}])
    assert _value(_scrape(fake), "problems_detected_count") == 2.0


@pytest.mark.parametrize("frequency,present", [(0.0, False), (60.0, True), (-1.5, True)])
def test_frequency_suppressed_only_when_zero(fake, frequency, present):
    fake.get_meter_aggregates.return_value = {"site": _reading(frequency=frequency)}
    fake.meters["site"] = [models.Meter(type="neurio", device_serial="S1", readings=_reading(frequency=frequency))]
    sink = _scrape(fake)
    assert (_value(sink, "frequency_hz", "site") is not None) is present
    assert (_value(sink, "dev_frequency_hz", "site", "neurio", "S1") is not None) is present
    # zero power is a real reading and never suppressed
    assert _value(sink, "instant_power_watts", "site") is not None


def test_zero_power_is_emitted(fake):
    fake.get_meter_aggregates.return_value = {"load": _reading(instant_power=0.0)}
    assert _value(_scrape(fake), "instant_power_watts", "load") == 0.0


def test_transport_error_aborts_remaining_steps(fake):
    fake.get_system_status.side_effect = TransportError("connection reset")
    sink = _scrape(fake)
    names = _names(sink)

    assert "powerwall_info" in names
    assert "powerwall_charge_ratio" in names
    assert "powerwall_problems_detected_count" in names
    assert "powerwall_full_pack_joules" not in names
    assert "powerwall_instant_power_watts" not in names
    assert "powerwall_network_enabled" not in names
    fake.get_meter_aggregates.assert_not_awaited()
    fake.get_networks.assert_not_awaited()


def test_transport_error_on_first_step_yields_empty_scrape(fake):
    fake.get_status.side_effect = TransportError("connection refused")
    sink = _scrape(fake)
    assert sink.collect() == []
    fake.get_state_of_energy.assert_not_awaited()


def test_api_error_skips_only_that_step(fake):
    fake.get_operation.side_effect = ApiError("Malformed response from /api/operation")
    sink = _scrape(fake)
    names = _names(sink)

    assert "powerwall_operation_mode" not in names
    assert "powerwall_reserve_ratio" not in names
    assert "powerwall_charge_ratio" in names
    assert "powerwall_sitemaster_running" in names
    assert "powerwall_network_enabled" in names


def test_meter_detail_error_keeps_aggregates(fake):
    def meters(cat):
        if cat == "solar":
            raise ApiError("HTTP 500")
        return fake.meters[cat]

    fake.get_meters.side_effect = meters
    sink = _scrape(fake)

    assert _value(sink, "instant_power_watts", "solar") == 1234.5
    assert _value(sink, "instant_power_watts", "load") == 800.0
    dev_samples = [s for f in sink.collect() if f.name == "powerwall_dev_instant_power_watts" for s in f.samples]
    assert [s.labels["category"] for s in dev_samples] == ["load"]
    assert "powerwall_network_enabled" in _names(sink)


def test_meter_detail_transport_error_continues_with_other_categories(fake):
    fake.get_meters.side_effect = [TransportError("timeout"), fake.meters["load"]]
    sink = _scrape(fake)
    assert _value(sink, "dev_instant_power_watts", "load", "synchrometerX", "SYN1") == 1234.5
    assert "powerwall_network_enabled" in _names(sink)


def test_network_state_only_with_network_name(fake):
    sink = _scrape(fake)
    assert _value(sink, "network_state", "EthType", "ethernet_tesla_internal_default",
                  "DeviceStateReady", "DeviceStateReasonNone") == 1.0
    assert _value(sink, "network_enabled", "GsmType", "gsm") == 0.0
    states = [s.labels["name"] for f in sink.collect() if f.name == "powerwall_network_state" for s in f.samples]
    assert "gsm" not in states
    signal = [s.labels["name"] for f in sink.collect() if f.name == "powerwall_network_signal_strength"
              for s in f.samples]
    assert signal == ["wifi_home"]
    assert _value(sink, "network_signal_strength", "WifiType", "wifi_home") == 63.0


def test_exposition_output(fake):
    output = generate_latest(_scrape(fake)).decode()
    assert "# HELP powerwall_charge_ratio Total amount of charge" in output
    # older prometheus_client releases drop the _total suffix from the TYPE line
    type_lines = [line for line in output.splitlines() if line.startswith("# TYPE powerwall_battery_charged_joules")]
    assert type_lines[0] in (
        "# TYPE powerwall_battery_charged_joules counter",
        "# TYPE powerwall_battery_charged_joules_total counter",
    )
    assert 'powerwall_battery_charged_joules_total{serial="TG1"} 3.6e+06' in output
    assert "powerwall_uptime_seconds 3600.0" in output
    assert 'powerwall_sitemaster_busy{reason="Power flow is too high"} 1.0' in output


def test_sink_rejects_label_mismatch(fake):
    pwc = collector.PowerwallCollector(fake)
    sink = collector.MetricSink(pwc.metrics)
    with pytest.raises(ValueError):
        sink.gauge("battery_info", 1, "TG1")
    with pytest.raises(ValueError):
        sink.gauge("charge_ratio", 0.5, "extra")


def test_sink_rejects_kind_mismatch(fake):
    sink = collector.MetricSink(collector.PowerwallCollector(fake).metrics)
    with pytest.raises(ValueError):
        sink.gauge("exported_joules_total", 1.0, "solar")
    with pytest.raises(ValueError):
        sink.counter("charge_ratio", 1.0)


def test_duplicate_label_values_emit_one_series(fake):
    fake.get_networks.return_value = [
        models.Network(network_name="x", interface="EthType", enabled=True),
        models.Network(network_name="x", interface="EthType", enabled=False),
    ]
    fake.meters["load"] = fake.meters["load"] * 2
    sink = _scrape(fake)

    assert _series(sink, "network_enabled") == [("EthType", "x")]
    assert _value(sink, "network_enabled", "EthType", "x") == 1.0
    assert _series(sink, "dev_instant_power_watts").count(("load", "synchrometerX", "SYN1")) == 1
    output = generate_latest(sink).decode()
    assert output.count('powerwall_network_enabled{name="x",type="EthType"}') == 1
