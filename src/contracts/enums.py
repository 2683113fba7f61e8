"""Canonical enumerations for power-quality events and grouping."""

from __future__ import annotations

from enum import Enum


class DetectionAction(str, Enum):
    """What the pattern detector recommends doing with an event."""

    IGNORE = "ignore"
    REVIEW = "review"
    FLAG = "flag"
    AUTO_REMOVE = "auto-remove"


class PQEventType(str, Enum):
    VOLTAGE_DIP = "voltage_dip"
    VOLTAGE_SWELL = "voltage_swell"
    INTERRUPTION = "interruption"
    HARMONIC = "harmonic"
    TRANSIENT = "transient"
    FLICKER = "flicker"


class GroupingType(str, Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"
    NONE = "none"


class CorrelationKey(str, Enum):
    """Partition key used by automatic grouping."""

    SUBSTATION = "substation"
    SUBSTATION_CIRCUIT = "substation_circuit"
