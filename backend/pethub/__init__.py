"""Local hub for Tuya-style pet appliances and Bluetooth smart lamps."""

__version__ = "1.0.0"
