"""Configuration and logging shared by every panelauth component."""
