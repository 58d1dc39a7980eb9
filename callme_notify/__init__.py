"""CallMe push fan-out, schedule matching and availability sweeps."""

__version__ = "0.1.0"
