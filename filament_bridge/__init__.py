"""
Filament Bridge: PC/SC bridge for reading and writing filament RFID tags.

Requires: pyscard, websockets
Run:      python -m filament_bridge
"""

__version__ = "0.1.0"
