import json

from core.utils import clear_directory, directory_size, safe_json_read, safe_json_write


class TestSafeJson:
    def test_round_trip(self, tmp_path):
        path = str(tmp_path / "data.json")
        assert safe_json_write(path, {"a": 1, "名前": "値"}) is True
        assert safe_json_read(path) == {"a": 1, "名前": "値"}

    def test_keeps_backups(self, tmp_path):
        path = tmp_path / "data.json"
        for i in range(3):
            safe_json_write(str(path), {"n": i})
        assert json.loads((tmp_path / "data.json.backup.1").read_text()) == {"n": 1}
        assert json.loads((tmp_path / "data.json.backup.2").read_text()) == {"n": 0}
        assert not (tmp_path / "data.json.tmp").exists()

    def test_recovers_from_backup(self, tmp_path, caplog):
        path = tmp_path / "data.json"
        safe_json_write(str(path), {"n": 1})
        safe_json_write(str(path), {"n": 2})
        path.write_text("{corrupt", encoding="utf-8")
        assert safe_json_read(str(path)) == {"n": 1}
        assert "RECOVERY" in caplog.text

    def test_missing_file(self, tmp_path):
        assert safe_json_read(str(tmp_path / "missing.json")) is None

    def test_unserializable_payload(self, tmp_path):
        assert safe_json_write(str(tmp_path / "x.json"), {"bad": object()}) is False


class TestDirectories:
    def test_size_and_clear(self, tmp_path):
        (tmp_path / "sub").mkdir()
        (tmp_path / "a.bin").write_bytes(b"1" * 10)
        (tmp_path / "sub" / "b.bin").write_bytes(b"2" * 5)
        assert directory_size(str(tmp_path)) == 15

        assert clear_directory(str(tmp_path)) is True
        assert tmp_path.exists()
        assert list(tmp_path.iterdir()) == []

    def test_missing_directory(self, tmp_path):
        assert directory_size(str(tmp_path / "none")) == 0
        assert clear_directory(str(tmp_path / "none")) is True
