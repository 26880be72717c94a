import pytest

from ollama_autotune.errors import MissingConfigError, StrategyParseError
from ollama_autotune.strategy import load_strategy, parse_strategy


def test_missing_file_raises(tmp_path) -> None:
    with pytest.raises(MissingConfigError):
        load_strategy(tmp_path / "absent.conf")


def test_empty_file_uses_defaults(tmp_path) -> None:
    path = tmp_path / "autotune.conf"
    path.write_text("# only comments\n\n", encoding="utf-8")
    strategy = load_strategy(path)
    assert strategy.mode == "conservative"
    assert strategy.headroom is None
    assert strategy.mmap is None
    assert strategy.mode_overrides == {}


def test_parses_quotes_comments_and_overrides() -> None:
    text = """
# header
MODE="aggressive"
export HEADROOM=3
CORES_PER_WORKER='2'
TIMEOUT=45   # seconds
MMAP=false
SAFE_BATCH_SIZE=128
AGGRESSIVE_TIMEOUT="90"
SOMETHING_ELSE=ignored
"""
    strategy = parse_strategy(text)
    assert strategy.mode == "aggressive"
    assert strategy.headroom == 3
    assert strategy.cores_per_worker == 2
    assert strategy.timeout == 45
    assert strategy.mmap is False
    assert strategy.mode_overrides == {
        "conservative": {"batch_size": 128},
        "aggressive": {"timeout": 90},
    }
    assert strategy.override("timeout", "aggressive") == 90
    assert strategy.override("timeout", "balanced") == 45


def test_later_assignment_wins() -> None:
    assert parse_strategy("MODE=safe\nMODE=balanced\n").mode == "balanced"


def test_invalid_mode_is_not_rejected_at_load() -> None:
    assert parse_strategy('MODE="nonexistent"').mode == "nonexistent"


@pytest.mark.parametrize(
    "line",
    [
        "this line has no equals sign",
        "=value",
        "BAD KEY=1",
        'MODE="balanced',
        'MODE="balanced" trailing',
        "HEADROOM=four",
        "CORES_PER_WORKER=0",
        "HEADROOM=-1",
        "MMAP=maybe",
    ],
)
def test_malformed_lines_raise(line: str) -> None:
    with pytest.raises(StrategyParseError):
        parse_strategy(f"MODE=balanced\n{line}\n", source="test.conf")


def test_parse_error_names_the_line(tmp_path) -> None:
    path = tmp_path / "autotune.conf"
    path.write_text("MODE=balanced\nnonsense\n", encoding="utf-8")
    with pytest.raises(StrategyParseError) as exc:
        load_strategy(path)
    assert f"{path}:2" in str(exc.value)


@pytest.mark.parametrize("line", ["MODE=", 'MODE=""', "MODE=   # unset"])
def test_empty_mode_falls_back_to_default(line: str) -> None:
    assert parse_strategy(f"{line}\n").mode == "conservative"


def test_non_utf8_file_raises_parse_error(tmp_path) -> None:
    path = tmp_path / "autotune.conf"
    path.write_bytes(b"# caf\xe9\nMODE=balanced\n")
    with pytest.raises(StrategyParseError):
        load_strategy(path)
