"""OBD Forensics -- fuel-quality and battery diagnostics over ELM327.

Talks to an ELM327-compatible adapter (Wi-Fi, serial or simulation),
decodes live Mode 01 PIDs and runs the fuel-audit and battery forensics
analyses on top of them.  Results are emitted as immutable pydantic
models for presentation layers to consume.
"""

__version__ = "0.1.0"
