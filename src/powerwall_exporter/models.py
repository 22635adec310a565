"""Records returned by the Powerwall gateway local API.

Fields the gateway leaves out fall back to zero values, the same way the
gateway itself omits fields it does not populate. Fields that are present
but of the wrong type raise TypeError or ValueError so the client can
report the response as malformed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

from powerwall_exporter import util


def _obj(data: Any, what: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise TypeError(f"Expected JSON object for {what}, got {type(data).__name__}")
    return data


def _list(data: Any, what: str) -> List[Any]:
    if data is None:
        return []
    if not isinstance(data, list):
        raise TypeError(f"Expected JSON array for {what}, got {type(data).__name__}")
    return data


def _float(data: Dict[str, Any], key: str) -> float:
    value = data.get(key)
    if value is None:
        return 0.0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"Field {key!r} is not a number: {value!r}")
    return float(value)


def _int(data: Dict[str, Any], key: str) -> int:
    return int(_float(data, key))


def _bool(data: Dict[str, Any], key: str) -> bool:
    value = data.get(key)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise TypeError(f"Field {key!r} is not a boolean: {value!r}")
    return value


def _str(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise TypeError(f"Field {key!r} is not a string: {value!r}")
    return value


@dataclass
class Status:
    version: str = ""
    git_hash: str = ""
    up_time: float = 0.0
    commission_count: int = 0
    device_type: str = ""
    start_time: str = ""

    @classmethod
    def from_json(cls, data: Any) -> "Status":
        data = _obj(data, "status")
        up_time = data.get("up_time_seconds")
        return cls(
            version=_str(data, "version"),
            git_hash=_str(data, "git_hash"),
            up_time=util.parse_duration(up_time) if up_time not in (None, "") else 0.0,
            commission_count=_int(data, "commission_count"),
            device_type=_str(data, "device_type"),
            start_time=_str(data, "start_time"),
        )


@dataclass
class StateOfEnergy:
    percentage: float = 0.0

    @classmethod
    def from_json(cls, data: Any) -> "StateOfEnergy":
        data = _obj(data, "state of energy")
        return cls(percentage=_float(data, "percentage"))


@dataclass
class Operation:
    real_mode: str = ""
    backup_reserve_percent: float = 0.0

    @classmethod
    def from_json(cls, data: Any) -> "Operation":
        data = _obj(data, "operation")
        return cls(
            real_mode=_str(data, "real_mode"),
            backup_reserve_percent=_float(data, "backup_reserve_percent"),
        )


@dataclass
class Sitemaster:
    status: str = ""
    running: bool = False
    connected_to_tesla: bool = False
    power_supply_mode: bool = False
    can_reboot: str = ""

    @classmethod
    def from_json(cls, data: Any) -> "Sitemaster":
        data = _obj(data, "sitemaster")
        return cls(
            status=_str(data, "status"),
            running=_bool(data, "running"),
            connected_to_tesla=_bool(data, "connected_to_tesla"),
            power_supply_mode=_bool(data, "power_supply_mode"),
            can_reboot=_str(data, "can_reboot"),
        )


@dataclass
class Problems:
    problems: List[Any] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: Any) -> "Problems":
        data = _obj(data, "problems")
        return cls(problems=list(_list(data.get("problems"), "problems")))


@dataclass
class BatteryBlock:
    serial: str = ""
    part_number: str = ""
    version: str = ""
    nominal_full_pack_energy: float = 0.0
    nominal_energy_remaining: float = 0.0
    v_out: float = 0.0
    i_out: float = 0.0
    f_out: float = 0.0
    energy_charged: float = 0.0
    energy_discharged: float = 0.0
    off_grid: bool = False
    vf_mode: bool = False
    wobble_detected: bool = False
    charge_power_clamped: bool = False
    backup_ready: bool = False
    pinv_state: str = ""
    pinv_grid_state: str = ""
    opseq_state: str = ""

    @classmethod
    def from_json(cls, data: Any) -> "BatteryBlock":
        data = _obj(data, "battery block")
        return cls(
            serial=_str(data, "PackageSerialNumber"),
            part_number=_str(data, "PackagePartNumber"),
            version=_str(data, "version"),
            nominal_full_pack_energy=_float(data, "nominal_full_pack_energy"),
            nominal_energy_remaining=_float(data, "nominal_energy_remaining"),
            v_out=_float(data, "v_out"),
            i_out=_float(data, "i_out"),
            f_out=_float(data, "f_out"),
            energy_charged=_float(data, "energy_charged"),
            energy_discharged=_float(data, "energy_discharged"),
            off_grid=_bool(data, "off_grid"),
            vf_mode=_bool(data, "vf_mode"),
            wobble_detected=_bool(data, "wobble_detected"),
            charge_power_clamped=_bool(data, "charge_power_clamped"),
            backup_ready=_bool(data, "backup_ready"),
            pinv_state=_str(data, "pinv_state"),
            pinv_grid_state=_str(data, "pinv_grid_state"),
            opseq_state=_str(data, "OpSeqState"),
        )


@dataclass
class SystemStatus:
    nominal_full_pack_energy: float = 0.0
    nominal_energy_remaining: float = 0.0
    system_island_state: str = ""
    battery_blocks: List[BatteryBlock] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: Any) -> "SystemStatus":
        data = _obj(data, "system status")
        return cls(
            nominal_full_pack_energy=_float(data, "nominal_full_pack_energy"),
            nominal_energy_remaining=_float(data, "nominal_energy_remaining"),
            system_island_state=_str(data, "system_island_state"),
            battery_blocks=[
                BatteryBlock.from_json(block)
                for block in _list(data.get("battery_blocks"), "battery_blocks")
            ],
        )


@dataclass
class MeterReading:
    instant_power: float = 0.0
    instant_reactive_power: float = 0.0
    instant_apparent_power: float = 0.0
    frequency: float = 0.0
    energy_exported: float = 0.0
    energy_imported: float = 0.0
    instant_average_voltage: float = 0.0
    instant_average_current: float = 0.0
    instant_total_current: float = 0.0

    @classmethod
    def from_json(cls, data: Any) -> "MeterReading":
        data = _obj(data, "meter reading")
        return cls(
            instant_power=_float(data, "instant_power"),
            instant_reactive_power=_float(data, "instant_reactive_power"),
            instant_apparent_power=_float(data, "instant_apparent_power"),
            frequency=_float(data, "frequency"),
            energy_exported=_float(data, "energy_exported"),
            energy_imported=_float(data, "energy_imported"),
            instant_average_voltage=_float(data, "instant_average_voltage"),
            instant_average_current=_float(data, "instant_average_current"),
            instant_total_current=_float(data, "instant_total_current"),
        )


def meter_aggregates_from_json(data: Any) -> Dict[str, MeterReading]:
    """Parse /api/meters/aggregates into a mapping of category to reading."""
    data = _obj(data, "meter aggregates")
    return {str(cat): MeterReading.from_json(reading) for cat, reading in data.items()}


@dataclass
class Meter:
    id: int = 0
    location: str = ""
    type: str = ""
    device_serial: str = ""
    readings: MeterReading = field(default_factory=MeterReading)

    @classmethod
    def from_json(cls, data: Any) -> "Meter":
        data = _obj(data, "meter")
        connection = _obj(data.get("connection") or {}, "meter connection")
        return cls(
            id=_int(data, "id"),
            location=_str(data, "location"),
            type=_str(data, "type"),
            device_serial=_str(connection, "device_serial"),
            readings=MeterReading.from_json(data.get("Cached_readings") or {}),
        )


def meters_from_json(data: Any) -> List[Meter]:
    return [Meter.from_json(item) for item in _list(data, "meters")]


@dataclass
class NetworkInfo:
    network_name: str = ""
    interface: str = ""
    state: str = ""
    state_reason: str = ""
    signal_strength: int = 0

    @classmethod
    def from_json(cls, data: Any) -> "NetworkInfo":
        data = _obj(data, "network info")
        return cls(
            network_name=_str(data, "network_name"),
            interface=_str(data, "interface"),
            state=_str(data, "state"),
            state_reason=_str(data, "state_reason"),
            signal_strength=_int(data, "signal_strength"),
        )


@dataclass
class Network:
    network_name: str = ""
    interface: str = ""
    enabled: bool = False
    active: bool = False
    primary: bool = False
    iface_network_info: NetworkInfo = field(default_factory=NetworkInfo)

    @classmethod
    def from_json(cls, data: Any) -> "Network":
        data = _obj(data, "network")
        return cls(
            network_name=_str(data, "network_name"),
            interface=_str(data, "interface"),
            enabled=_bool(data, "enabled"),
            active=_bool(data, "active"),
            primary=_bool(data, "primary"),
            iface_network_info=NetworkInfo.from_json(data.get("iface_network_info") or {}),
        )


def networks_from_json(data: Any) -> List[Network]:
    return [Network.from_json(item) for item in _list(data, "networks")]
