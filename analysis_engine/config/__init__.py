"""Configuration module for the analysis engine."""

from analysis_engine.config.settings import EngineConfig, load_config

__all__ = ["EngineConfig", "load_config"]
