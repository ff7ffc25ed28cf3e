import json
import os
from pathlib import Path

import pytest

from conftest import flat_conversation_json, make_zip
from convarchive.corpus_loader import (
    CorpusLoader,
    LoaderConfig,
    LoadStatus,
    SourceKind,
    main,
)
from convarchive.schema_normalization import DualShapePolicy

CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"

@pytest.fixture
def export_dir(tmp_path):
    """Three valid exports, two invalid ones and a file that is not a candidate."""
    root = tmp_path / "exports"
    root.mkdir()
    for name in ("c1", "c2", "c3"):
        (root / f"{name}.json").write_text(flat_conversation_json(name, "hello", "hi there"), encoding="utf-8")
    (root / "bad.json").write_text("{not json", encoding="utf-8")
    (root / "odd.json").write_text(json.dumps({"settings": {"theme": "dark"}}), encoding="utf-8")
    (root / "readme.rst").write_text("ignored", encoding="utf-8")
    return root

def test_per_file_isolation(export_dir, clock):
    result = CorpusLoader().load(export_dir, clock)

    assert result.sources_found == 5
    assert [c.id for c in result.conversations] == ["c1", "c2", "c3"]
    assert result.status == LoadStatus.PARTIAL

    by_source = {Path(e.source).name: e.summary for e in result.errors}
    assert set(by_source) == {"bad.json", "odd.json"}
    assert by_source["bad.json"].startswith("Malformed JSON")
    assert by_source["odd.json"].startswith("Unrecognized JSON shape")

def test_complete_load(tmp_path, clock):
    (tmp_path / "a.json").write_text(flat_conversation_json("a", "x"), encoding="utf-8")
    (tmp_path / "chat.txt").write_text("Human: hi\nAssistant: hello", encoding="utf-8")

    result = CorpusLoader().load([tmp_path], clock)
    assert result.status == LoadStatus.COMPLETE
    assert [c.platform for c in result.conversations] == ["Unknown", "Claude"]

def test_empty_directory_is_no_sources(tmp_path):
    result = CorpusLoader().load(tmp_path)
    assert result.status == LoadStatus.NO_SOURCES
    assert result.no_sources_found
    assert result.conversations == []
    assert result.errors == []

def test_missing_root_is_no_sources(tmp_path):
    result = CorpusLoader().load(tmp_path / "nowhere")
    assert result.status == LoadStatus.NO_SOURCES

def test_only_invalid_files_is_no_conversations(tmp_path):
    (tmp_path / "bad.json").write_text("[", encoding="utf-8")
    result = CorpusLoader().load(tmp_path)

    assert result.status == LoadStatus.NO_CONVERSATIONS
    assert not result.no_sources_found
    assert len(result.errors) == 1

def test_single_file_root(tmp_path, clock):
    path = tmp_path / "only.json"
    path.write_text(flat_conversation_json("only", "hi"), encoding="utf-8")
    result = CorpusLoader().load(path, clock)
    assert [c.id for c in result.conversations] == ["only"]

def test_zip_on_disk(tmp_path, clock):
    (tmp_path / "bundle.zip").write_bytes(make_zip({
        "conversations.json": flat_conversation_json("z1", "hi"),
        "broken.json": b"\xff\xfe",
        "chat.md": "Human: question?\nAssistant: answer",
    }))
    result = CorpusLoader().load(tmp_path, clock)

    assert [c.id for c in result.conversations][0] == "z1"
    assert len(result.conversations) == 2
    [error] = result.errors
    assert error.source.endswith("bundle.zip!broken.json")
    assert result.status == LoadStatus.PARTIAL

def test_corrupt_zip_is_recorded(tmp_path, clock):
    (tmp_path / "fake.zip").write_bytes(b"not a zip at all")
    (tmp_path / "ok.json").write_text(flat_conversation_json("ok", "hi"), encoding="utf-8")

    result = CorpusLoader().load(tmp_path, clock)
    assert [c.id for c in result.conversations] == ["ok"]
    [error] = result.errors
    assert error.source.endswith("fake.zip")
    assert "ZIP" in error.summary

def test_oversized_file_is_recorded(tmp_path, clock):
    (tmp_path / "big.json").write_text(flat_conversation_json("big", "x" * 200), encoding="utf-8")
    result = CorpusLoader(LoaderConfig(max_file_bytes=50)).load(tmp_path, clock)

    assert result.conversations == []
    assert "limit" in result.errors[0].summary

def test_max_depth_bounds_walk(tmp_path):
    (tmp_path / "top.json").write_text("{}", encoding="utf-8")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    (nested / "deep.json").write_text("{}", encoding="utf-8")

    shallow, _ = CorpusLoader(LoaderConfig(max_depth=0)).discover([tmp_path])
    full, _ = CorpusLoader().discover([tmp_path])

    assert [s.path.name for s in shallow] == ["top.json"]
    assert sorted(s.path.name for s in full) == ["deep.json", "top.json"]

def test_max_files_bounds_walk(export_dir):
    sources, _ = CorpusLoader(LoaderConfig(max_files=2)).discover([export_dir])
    assert len(sources) == 2

def test_symlinked_directories_are_not_followed(tmp_path):
    outside = tmp_path / "outside"
    outside.mkdir()
    (outside / "c.json").write_text(flat_conversation_json("c", "hi"), encoding="utf-8")
    root = tmp_path / "root"
    root.mkdir()
    try:
        os.symlink(outside, root / "link", target_is_directory=True)
    except (OSError, NotImplementedError):
        pytest.skip("symlinks not available")

    assert CorpusLoader().load(root).status == LoadStatus.NO_SOURCES

def test_classify():
    loader = CorpusLoader()
    assert loader.classify("A.JSON") == SourceKind.JSON
    assert loader.classify("notes.markdown") == SourceKind.TRANSCRIPT
    assert loader.classify("export.zip") == SourceKind.ARCHIVE
    assert loader.classify("photo.jpg") is None

def test_load_blobs(clock):
    blobs = [
        ("conversations.json", flat_conversation_json("b1", "hi").encode("utf-8")),
        ("chat.md", b"Human: hello\nAssistant: hey"),
        ("bundle.zip", make_zip({"inner.json": flat_conversation_json("b2", "yo")})),
        ("photo.png", b"\x89PNG"),
        ("latin1.txt", "Human: caf\xe9".encode("latin-1")),
    ]
    result = CorpusLoader().load_blobs(blobs, clock)

    assert result.sources_found == 4
    assert len(result.conversations) == 3
    assert result.conversations[0].id == "b1"
    assert result.conversations[2].id == "b2"
    [error] = result.errors
    assert error.source == "latin1.txt"
    assert result.status == LoadStatus.PARTIAL

def test_load_blobs_without_candidates():
    assert CorpusLoader().load_blobs([("a.png", b"")]).status == LoadStatus.NO_SOURCES

def test_parallel_load_keeps_discovery_order(tmp_path, clock):
    for i in range(8):
        (tmp_path / f"f{i}.json").write_text(flat_conversation_json(f"id{i}", "hi", "there"), encoding="utf-8")
    (tmp_path / "f9.json").write_text("oops", encoding="utf-8")

    sequential = CorpusLoader().load(tmp_path, clock)
    parallel = CorpusLoader(LoaderConfig(max_workers=4)).load(tmp_path, clock)

    assert [c.id for c in parallel.conversations] == [c.id for c in sequential.conversations]
    assert [c.to_dict() for c in parallel.conversations] == [c.to_dict() for c in sequential.conversations]
    assert parallel.errors == sequential.errors

def test_cancel_stops_new_sources(export_dir, clock):
    class CancellingLoader(CorpusLoader):
        def _load_source(self, source, batch_clock):
            result = super()._load_source(source, batch_clock)
            self.cancel()
            return result

    result = CancellingLoader().load(export_dir, clock)
    # bad.json sorts first and is the only source processed
    assert result.conversations == []
    assert len(result.errors) == 1

def test_reload_is_idempotent(export_dir, clock):
    loader = CorpusLoader()
    first = loader.load(export_dir, clock)
    second = loader.load(export_dir, clock)
    assert [c.to_dict() for c in first.conversations] == [c.to_dict() for c in second.conversations]

def test_dual_shape_policy_from_config(tmp_path, branching_tree, clock):
    branching_tree["messages"] = [{"role": "user", "content": "flat"}]
    (tmp_path / "dual.json").write_text(json.dumps(branching_tree), encoding="utf-8")
    config = LoaderConfig.from_dict({"dual_shape_policy": "both"})

    assert config.dual_shape_policy == DualShapePolicy.BOTH
    ids = [c.id for c in CorpusLoader(config).load(tmp_path, clock).conversations]
    assert ids == ["conv-tree", "conv-tree:messages"]

# ===| CONFIG |===

def test_shipped_loader_config():
    config = LoaderConfig.from_yaml(CONFIG_DIR / "loader.yaml")

    assert config.max_workers == 4
    assert config.export_mapping_path == CONFIG_DIR / "export_mapping.yaml"
    loader = CorpusLoader(config)
    assert loader.schema_normalizer.export_mapping.role_mapping == {"tool": "assistant"}

def test_empty_config_keeps_defaults(tmp_path):
    path = tmp_path / "loader.yaml"
    path.write_text("", encoding="utf-8")
    assert LoaderConfig.from_yaml(path) == LoaderConfig()

def test_config_rejects_unknown_policy():
    with pytest.raises(ValueError):
        LoaderConfig.from_dict({"dual_shape_policy": "neither"})

# ===| CLI |===

def test_cli_writes_corpus(export_dir, tmp_path):
    output = tmp_path / "out" / "corpus.json"
    assert main(["--input", str(export_dir), "--output", str(output), "--workers", "2"]) == 0

    payload = json.loads(output.read_text(encoding="utf-8"))
    assert payload["status"] == "partial"
    assert [c["id"] for c in payload["conversations"]] == ["c1", "c2", "c3"]
    assert len(payload["errors"]) == 2
    assert payload["statistics"]["total_messages"] == 6
    assert payload["statistics"]["average_messages_per_conversation"] == 2

def test_cli_reports_no_sources(tmp_path):
    assert main(["--input", str(tmp_path)]) == 1

def test_bad_timestamp_only_affects_its_message(tmp_path, clock):
    export = [
        {"uuid": "good", "chat_messages": [
            {"uuid": "m1", "sender": "human", "text": "fine", "created_at": "2024-01-15T10:00:00Z"},
        ]},
        {"uuid": "bad", "chat_messages": [
            {"uuid": "m1", "sender": "human", "text": "odd offset", "created_at": "2024-06-01T00:00:00+99:00"},
        ]},
    ]
    (tmp_path / "conversations.json").write_text(json.dumps(export), encoding="utf-8")

    result = CorpusLoader().load(tmp_path, clock)

    assert result.errors == []
    assert [c.id for c in result.conversations] == ["good", "bad"]
    [message] = result.conversations[1].messages
    assert message.timestamp == clock.now
    assert message.metadata["timestamp_imputed"] is True
