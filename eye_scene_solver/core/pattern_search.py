"""
Generalized pattern search (compass search) with bound constraints.

Derivative-free: each iteration polls the 2N points x +/- mesh_size * e_i.
A successful poll moves to the best improving point and expands the mesh;
an unsuccessful poll contracts it. Poll points outside the bounds are not
evaluated. The objective may be noisy or non-smooth (it wraps an inner
optimization), which is why no gradients are used.
"""
import logging
from dataclasses import dataclass
from typing import Callable

import numpy as np
from numpy.typing import NDArray

from eye_scene_solver.core.errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class PatternSearchConfig:
    """Pattern search settings."""

    initial_mesh_size: float = 1.0
    """Initial poll step, in parameter units"""

    mesh_expansion: float = 2.0
    mesh_contraction: float = 0.5

    mesh_tolerance: float = 1e-3
    """Stop once the mesh shrinks below this"""

    function_tolerance: float = 1e-6
    """Stop when a successful poll improves the objective by less than this on a contracted mesh"""

    max_iterations: int = 300
    max_function_evaluations: int = 3000

    complete_poll: bool = True
    """Evaluate every poll point; otherwise stop at the first improvement"""

    use_cache: bool = True
    """Reuse objective values at previously visited points"""

    random_seed: int | None = None
    """Shuffle the poll order with this seed; fixed order if None"""

    def __post_init__(self) -> None:
        if self.initial_mesh_size <= 0 or self.mesh_tolerance <= 0:
            raise ConfigurationError("Mesh sizes must be positive")
        if not (self.mesh_expansion >= 1.0 and 0.0 < self.mesh_contraction < 1.0):
            raise ConfigurationError(
                f"Need mesh_expansion >= 1 and 0 < mesh_contraction < 1, "
                f"got {self.mesh_expansion} and {self.mesh_contraction}"
            )


@dataclass
class PatternSearchResult:
    x: NDArray[np.float64]
    fun: float
    initial_fun: float
    n_iterations: int
    n_function_evaluations: int
    final_mesh_size: float
    exit_message: str


def validate_bounds(
    *,
    lower: NDArray[np.float64],
    upper: NDArray[np.float64],
    name: str = "search",
) -> None:
    """Raise ConfigurationError for empty, non-finite or inverted bounds."""
    if lower.shape != upper.shape or lower.size == 0:
        raise ConfigurationError(f"{name} bounds are empty or mismatched: {lower.shape} vs {upper.shape}")
    if not (np.all(np.isfinite(lower)) and np.all(np.isfinite(upper))):
        raise ConfigurationError(f"{name} bounds must be finite: lower={lower}, upper={upper}")
    if np.any(lower > upper):
        raise ConfigurationError(f"{name} bounds are inconsistent: lower={lower} exceeds upper={upper}")


class _CachedObjective:
    def __init__(self, *, objective: Callable[[NDArray[np.float64]], float], use_cache: bool) -> None:
        self.objective = objective
        self.use_cache = use_cache
        self.cache: dict[tuple[float, ...], float] = {}
        self.n_evaluations = 0

    def __call__(self, x: NDArray[np.float64]) -> float:
        key = tuple(np.round(x, 12))
        if self.use_cache and key in self.cache:
            return self.cache[key]
        value = float(self.objective(x))
        if np.isnan(value):
            value = np.inf
        self.n_evaluations += 1
        if self.use_cache:
            self.cache[key] = value
        return value


def pattern_search(
    *,
    objective: Callable[[NDArray[np.float64]], float],
    x0: NDArray[np.float64],
    lower: NDArray[np.float64],
    upper: NDArray[np.float64],
    config: PatternSearchConfig | None = None,
) -> PatternSearchResult:
    """
    Minimize a bounded objective without derivatives.

    Args:
        objective: f(x) -> float; NaN counts as +inf
        x0: Starting point, clipped into the bounds
        lower: Lower bounds
        upper: Upper bounds
        config: Search settings

    Returns:
        PatternSearchResult
    """
    config = config or PatternSearchConfig()
    x0 = np.asarray(x0, dtype=np.float64)
    lower = np.asarray(lower, dtype=np.float64)
    upper = np.asarray(upper, dtype=np.float64)
    validate_bounds(lower=lower, upper=upper)
    if x0.shape != lower.shape:
        raise ConfigurationError(f"x0 shape {x0.shape} does not match bounds shape {lower.shape}")

    if np.any((x0 < lower) | (x0 > upper)):
        logger.warning(f"Start point {x0} outside bounds, clipping")
    x = np.clip(x0, lower, upper)

    n_params = len(x)
    directions = np.vstack([np.eye(n_params), -np.eye(n_params)])
    rng = np.random.default_rng(config.random_seed) if config.random_seed is not None else None

    cached_objective = _CachedObjective(objective=objective, use_cache=config.use_cache)
    f = cached_objective(x)
    initial_f = f
    mesh_size = config.initial_mesh_size
    has_contracted = False
    exit_message = "Maximum iterations reached"

    iteration = 0
    for iteration in range(1, config.max_iterations + 1):
        poll_order = rng.permutation(len(directions)) if rng is not None else np.arange(len(directions))
        best_x, best_f = x, f

        for direction_index in poll_order:
            trial = x + mesh_size * directions[direction_index]
            if np.any(trial < lower) or np.any(trial > upper):
                continue
            trial_f = cached_objective(trial)
            if trial_f < best_f:
                best_x, best_f = trial, trial_f
                if not config.complete_poll:
                    break
            if cached_objective.n_evaluations >= config.max_function_evaluations:
                break

        if best_f < f:
            improvement = f - best_f
            x, f = best_x, best_f
            logger.debug(f"Iteration {iteration}: f={f:.6g}, mesh={mesh_size:.4g}")
            if has_contracted and improvement < config.function_tolerance:
                exit_message = "Function tolerance reached"
                break
            mesh_size *= config.mesh_expansion
        else:
            mesh_size *= config.mesh_contraction
            has_contracted = True
            if mesh_size < config.mesh_tolerance:
                exit_message = "Mesh tolerance reached"
                break

        if cached_objective.n_evaluations >= config.max_function_evaluations:
            exit_message = "Maximum function evaluations reached"
            break

    return PatternSearchResult(
        x=x,
        fun=f,
        initial_fun=initial_f,
        n_iterations=iteration,
        n_function_evaluations=cached_objective.n_evaluations,
        final_mesh_size=mesh_size,
        exit_message=exit_message,
    )
