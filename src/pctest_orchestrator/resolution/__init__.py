"""Input resolution: environment layering, EnvRef lookup, and typed conversion."""

from pctest_orchestrator.resolution.environment import EffectiveEnvironment, layer_environment
from pctest_orchestrator.resolution.inputs import ResolvedInputs, merge_input_layers, resolve_inputs
from pctest_orchestrator.resolution.values import ParameterValueError, convert_parameter_value

__all__ = [
    "EffectiveEnvironment",
    "ParameterValueError",
    "ResolvedInputs",
    "convert_parameter_value",
    "layer_environment",
    "merge_input_layers",
    "resolve_inputs",
]
