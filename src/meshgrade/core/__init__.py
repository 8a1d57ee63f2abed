# Copyright 2025 Allard Peper (Dragon Ace / DragonAceNL)
# Licensed under the Apache License, Version 2.0 (see LICENSE).

"""
Core logic for adaptive mesh grading.

- halfedge: Index-based halfedge mesh with split/collapse/flip operators
- landmarks: Ear-channel landmark resolution
- sizing: Curvature and distance based sizing fields
- projection: Closest-point projection onto the input surface
- remesher: Split/collapse/flip/relax iteration driver
- grader: Grading entry point
- config: Grading configuration and presets
- mesh_ops: Load, save, and analyze meshes
- validation: Post-grading checks
"""

from .config import (
    ConfigurationError,
    GradingConfig,
    PRESETS,
    PRESET_DESCRIPTIONS,
    get_preset,
    list_presets,
)

from .halfedge import HalfedgeMesh

from .landmarks import (
    DEFAULT_GAMMA,
    Landmark,
    estimate_ear_channel,
    resolve_gamma,
    resolve_landmarks,
)

from .sizing import (
    SizingField,
    SizingFieldEstimator,
    compute_curvature,
    compute_sizing_field,
)

from .projection import ProjectionResult, ReferenceSurface

from .remesher import IncrementalRemesher, IterationStats, RemeshStats

from .grader import GradingResult, MeshGrader, grade

from .mesh_ops import (
    MeshDiagnostics,
    load_mesh,
    save_mesh,
    compute_diagnostics,
    compute_fingerprint,
    format_diagnostics,
)

from .validation import (
    GradingValidation,
    validate_grading,
    format_validation_result,
)

__all__ = [
    # Configuration
    "ConfigurationError",
    "GradingConfig",
    "PRESETS",
    "PRESET_DESCRIPTIONS",
    "get_preset",
    "list_presets",
    # Mesh store
    "HalfedgeMesh",
    # Landmarks
    "DEFAULT_GAMMA",
    "Landmark",
    "estimate_ear_channel",
    "resolve_gamma",
    "resolve_landmarks",
    # Sizing
    "SizingField",
    "SizingFieldEstimator",
    "compute_curvature",
    "compute_sizing_field",
    # Projection
    "ProjectionResult",
    "ReferenceSurface",
    # Remeshing
    "IncrementalRemesher",
    "IterationStats",
    "RemeshStats",
    "GradingResult",
    "MeshGrader",
    "grade",
    # Mesh operations
    "MeshDiagnostics",
    "load_mesh",
    "save_mesh",
    "compute_diagnostics",
    "compute_fingerprint",
    "format_diagnostics",
    # Validation
    "GradingValidation",
    "validate_grading",
    "format_validation_result",
]
