from .loader import PresetLoader, PresetParameters, apply_preset, parse_preset_parameters

__all__ = ["PresetLoader", "PresetParameters", "apply_preset", "parse_preset_parameters"]
