from __future__ import annotations

from codebook_trainer.scripts import train_codebook


def test_list_presets(capsys):
    assert train_codebook.run(["--list-presets"]) == 0
    assert capsys.readouterr().out.split() == ["neutral2angry", "neutral2happy", "neutral2sad"]


def test_parse_args_defaults():
    args = train_codebook.parse_args(["neutral2sad", "--mode", "labels", "--no-kmeans"])

    assert args.presets == ["neutral2sad"]
    assert args.mode == "labels"
    assert args.no_kmeans
    assert args.seed == 1337


def test_missing_corpus_returns_error_code(tmp_path):
    code = train_codebook.run(["neutral2angry", "--corpus-root", str(tmp_path), "--output-root", str(tmp_path / "out")])

    assert code == 2
