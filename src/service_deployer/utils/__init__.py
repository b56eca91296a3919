"""Configuration and toolchain utilities."""
