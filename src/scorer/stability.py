"""
Stability Scoring - neighborhood quality in parameter space

A candidate is stable when the parameter sets close to it also score well.
For every candidate:

    neighbors   = other candidates with parameter distance <= threshold
    stability   = clamp01((mean(quality[neighbors]) - quality_min) / quality_range)
    quality     = core_score * dd_penalty

A candidate without neighbors gets stability 0. When all candidates share
the same quality, any candidate with at least one neighbor gets stability 1.

Parameter distance is the RMS of per-key scaled differences, where the scale
of a key is its p90 - p10 spread across the population. Keys with no spread
do not discriminate and are dropped. A numeric value missing on one side
costs a fixed 1.0 for that key.

Neighbor search is exact O(n^2) up to `pairwise_neighbor_limit` candidates.
Above it, candidates are hashed into quantized buckets (own bucket plus the
adjacent bucket per dimension, plus the full quantized vector) and exact
distances are only computed within shared buckets. Pairs that straddle bucket
edges in several dimensions at once can be missed; this is an accepted
approximation.
"""

import math
from typing import Dict, List, Mapping, Optional, Sequence, Set

import numpy as np

from src.scorer.settings import clamp01, is_finite_number
from src.utils.logger import get_logger

logger = get_logger(__name__)

# Scale/leverage knobs and the ticker describe position size, not behavior
STABILITY_IGNORED_PARAMS = frozenset({'initialCapital', 'maxLeverage', 'ticker'})

MIN_SPREAD = 1e-8
MIN_SCALE = 1e-6
SCALE_DIVISOR_FLOOR = 1e-9
MIN_BUCKET_STEP = 0.01
QUALITY_RANGE_EPSILON = 1e-12
EMPTY_VECTOR_KEY = 'vector:__empty__'


def _numeric(value) -> Optional[float]:
    return float(value) if is_finite_number(value) else None


def compute_parameter_scales(parameter_sets: Sequence[Mapping[str, object]]) -> Dict[str, float]:
    """
    Compute the distance scale for every numeric parameter key.

    Scale = max(p90 - p10, 1e-6), with percentiles taken by floor index over
    the sorted values. Keys whose spread is below 1e-8 are omitted.
    """
    values_by_key: Dict[str, List[float]] = {}
    for parameters in parameter_sets:
        for key, value in parameters.items():
            if key in STABILITY_IGNORED_PARAMS:
                continue
            number = _numeric(value)
            if number is not None:
                values_by_key.setdefault(key, []).append(number)

    scales: Dict[str, float] = {}
    for key, values in values_by_key.items():
        ordered = np.sort(np.asarray(values, dtype=float))
        last = len(ordered) - 1
        p90 = ordered[int(math.floor(last * 0.9))]
        p10 = ordered[int(math.floor(last * 0.1))]
        spread = float(p90 - p10)
        if spread < MIN_SPREAD:
            continue
        scales[key] = max(spread, MIN_SCALE)
    return scales


def compute_parameter_distance(
    a: Mapping[str, object],
    b: Mapping[str, object],
    scales: Mapping[str, float]
) -> float:
    """RMS of scaled per-key differences over the scaled keys present in either set."""
    keys: List[str] = []
    seen: Set[str] = set()
    for key in (*a.keys(), *b.keys()):
        if key in seen or key in STABILITY_IGNORED_PARAMS or key not in scales:
            continue
        seen.add(key)
        keys.append(key)

    if not keys:
        return 0.0

    sum_sq = 0.0
    for key in keys:
        value_a = _numeric(a.get(key))
        value_b = _numeric(b.get(key))
        if value_a is not None and value_b is not None:
            z = abs(value_a - value_b) / max(scales[key], SCALE_DIVISOR_FLOOR)
            sum_sq += z * z
        else:
            sum_sq += 1.0

    return math.sqrt(sum_sq / max(1, len(keys)))


def build_bucket_keys(
    parameters: Mapping[str, object],
    step: float,
    scales: Mapping[str, float]
) -> List[str]:
    """Bucket keys for one candidate: per-dimension q-1/q/q+1 plus the full vector."""
    safe_step = max(step, MIN_BUCKET_STEP)
    keys: List[str] = []
    seen: Set[str] = set()
    vector_parts: List[str] = []

    def add(key: str) -> None:
        if key not in seen:
            seen.add(key)
            keys.append(key)

    for key in sorted(parameters.keys()):
        if key in STABILITY_IGNORED_PARAMS or key not in scales:
            continue
        value = _numeric(parameters[key])
        if value is None:
            continue
        normalized = value / max(scales[key], SCALE_DIVISOR_FLOOR)
        quantized = _round_half_up(normalized / safe_step)
        vector_parts.append(f"{key}={quantized}")
        add(f"{key}:{quantized}")
        add(f"{key}:{quantized - 1}")
        add(f"{key}:{quantized + 1}")

    if not vector_parts:
        add(EMPTY_VECTOR_KEY)
        return keys

    add('vector:' + '|'.join(vector_parts))
    return keys


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_stability_scores(
    parameter_sets: Sequence[Mapping[str, object]],
    quality: Sequence[float],
    neighbor_threshold: float,
    pairwise_neighbor_limit: int
) -> List[float]:
    """
    Stability score (0-1) for each candidate.

    Args:
        parameter_sets: Parameter mapping per candidate
        quality: core_score * dd_penalty per candidate (same order)
        neighbor_threshold: Max parameter distance for two candidates to be neighbors
        pairwise_neighbor_limit: Largest population searched exhaustively

    Returns:
        Stability scores aligned with the input order
    """
    count = len(parameter_sets)
    if count == 0:
        return []

    scales = compute_parameter_scales(parameter_sets)
    quality_values = np.asarray(quality, dtype=float)
    finite = quality_values[np.isfinite(quality_values)]
    if finite.size:
        quality_min = float(finite.min())
        quality_max = float(finite.max())
    else:
        quality_min = quality_max = 0.0

    if count <= pairwise_neighbor_limit:
        neighbor_lists = _pairwise_neighbors(parameter_sets, neighbor_threshold, scales)
        mode = 'pairwise'
    else:
        logger.info(
            f"{count} candidates > pairwise limit {pairwise_neighbor_limit}, "
            f"using bucketed neighbor search"
        )
        neighbor_lists = _bucketed_neighbors(parameter_sets, neighbor_threshold, scales)
        mode = 'bucketed'

    quality_range = quality_max - quality_min
    has_range = quality_range > QUALITY_RANGE_EPSILON
    scores: List[float] = []
    for neighbors in neighbor_lists:
        if not neighbors:
            scores.append(0.0)
            continue
        neighbor_mean = float(np.mean(quality_values[neighbors]))
        normalized = (neighbor_mean - quality_min) / quality_range if has_range else 1.0
        scores.append(clamp01(normalized))

    logger.debug(
        f"Stability ({mode}): {count} candidates, {len(scales)} scaled params, "
        f"{sum(1 for n in neighbor_lists if n)} with neighbors"
    )
    return scores


def _pairwise_neighbors(
    parameter_sets: Sequence[Mapping[str, object]],
    threshold: float,
    scales: Mapping[str, float]
) -> List[List[int]]:
    neighbor_lists: List[List[int]] = []
    for i, params_i in enumerate(parameter_sets):
        neighbors = [
            j for j, params_j in enumerate(parameter_sets)
            if j != i and compute_parameter_distance(params_i, params_j, scales) <= threshold
        ]
        neighbor_lists.append(neighbors)
    return neighbor_lists


def _bucketed_neighbors(
    parameter_sets: Sequence[Mapping[str, object]],
    threshold: float,
    scales: Mapping[str, float]
) -> List[List[int]]:
    step = max(threshold, MIN_BUCKET_STEP)
    buckets: Dict[str, List[int]] = {}
    candidate_keys: List[List[str]] = []

    for index, parameters in enumerate(parameter_sets):
        keys = build_bucket_keys(parameters, step, scales)
        candidate_keys.append(keys)
        for key in keys:
            buckets.setdefault(key, []).append(index)

    neighbor_lists: List[List[int]] = []
    for i, keys in enumerate(candidate_keys):
        # dict keeps first-seen order so neighbor order is deterministic
        shared: Dict[int, None] = {}
        for key in keys:
            for index in buckets.get(key, ()):
                shared[index] = None
        shared.pop(i, None)

        neighbors = [
            j for j in shared
            if compute_parameter_distance(parameter_sets[i], parameter_sets[j], scales) <= threshold
        ]
        neighbor_lists.append(neighbors)
    return neighbor_lists
