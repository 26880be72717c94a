import pytest

from ollama_autotune.autotune import calculate, resolve_policy
from ollama_autotune.config import MODE_POLICIES, Strategy, TopologySnapshot
from ollama_autotune.errors import InvalidModeError


def test_conservative_eight_physical_cores() -> None:
    strategy = Strategy(mode="conservative", headroom=4)
    derived = calculate(strategy, TopologySnapshot(physical_cores=8, logical_cores=16))
    assert derived.num_thread == 2
    assert derived.num_parallel == 4
    assert derived.threads == 4
    assert derived.core_basis == "physical"


def test_safe_is_alias_for_conservative() -> None:
    topo = TopologySnapshot(physical_cores=8, logical_cores=8)
    assert calculate(Strategy(mode="safe"), topo) == calculate(Strategy(mode="conservative"), topo)
    assert calculate(Strategy(mode=" Balanced "), topo).mode == "balanced"


def test_invalid_mode_raises() -> None:
    with pytest.raises(InvalidModeError) as exc:
        calculate(Strategy(mode="nonexistent"), TopologySnapshot(physical_cores=4, logical_cores=8))
    assert "nonexistent" in str(exc.value)
    assert "balanced" in str(exc.value)


def test_empty_mode_is_invalid() -> None:
    with pytest.raises(InvalidModeError):
        resolve_policy("")


@pytest.mark.parametrize("mode", sorted(MODE_POLICIES))
@pytest.mark.parametrize("physical, logical", [(1, 1), (1, 2), (2, 4), (3, 3), (7, 14), (64, 128)])
def test_outputs_stay_within_core_basis(mode: str, physical: int, logical: int) -> None:
    derived = calculate(Strategy(mode=mode), TopologySnapshot(physical_cores=physical, logical_cores=logical))
    assert 1 <= derived.num_thread <= derived.total_cores
    assert 1 <= derived.num_parallel <= derived.total_cores
    assert derived.threads >= 1


def test_cores_per_worker_larger_than_host_is_clamped() -> None:
    derived = calculate(
        Strategy(mode="balanced", cores_per_worker=64),
        TopologySnapshot(physical_cores=4, logical_cores=8),
    )
    assert derived.num_thread == 4
    assert derived.num_parallel == 1


def test_logical_basis_raises_parallelism() -> None:
    topo = TopologySnapshot(physical_cores=8, logical_cores=16)
    physical = calculate(Strategy(mode="balanced", cores_per_worker=2, headroom=2), topo)
    logical = calculate(Strategy(mode="aggressive", cores_per_worker=2, headroom=2), topo)
    assert logical.core_basis == "logical"
    assert logical.num_parallel > physical.num_parallel


def test_per_mode_override_beats_global_override() -> None:
    strategy = Strategy(
        mode="aggressive",
        timeout=30,
        batch_size=128,
        mode_overrides={"aggressive": {"timeout": 90}},
    )
    derived = calculate(strategy, TopologySnapshot(physical_cores=4, logical_cores=8))
    assert derived.timeout == 90
    assert derived.batch_size == 128


def test_mode_defaults_order_timeouts() -> None:
    topo = TopologySnapshot(physical_cores=16, logical_cores=32)
    timeouts = [calculate(Strategy(mode=m), topo).timeout for m in ("conservative", "balanced", "aggressive")]
    assert timeouts == sorted(timeouts, reverse=True)
    assert calculate(Strategy(mode="balanced"), topo).mmap is True
    assert calculate(Strategy(mode="balanced", mmap=False), topo).mmap is False
