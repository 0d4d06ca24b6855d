import pytest

from lvmlocalpv import version


@pytest.fixture
def clean(monkeypatch, tmp_path):
    monkeypatch.setattr(version, "VERSION", "")
    monkeypatch.setattr(version, "VERSION_META", "")
    monkeypatch.setattr(version, "GIT_COMMIT", "")
    monkeypatch.setenv("GOPATH", str(tmp_path))
    repo = tmp_path / "src" / "lvm-localpv"
    repo.mkdir(parents=True)
    return repo


def test_get_uses_variable(clean, monkeypatch):
    monkeypatch.setattr(version, "VERSION", "2.1.0")
    assert version.get() == "2.1.0"
    assert version.current() == version.get()


def test_get_reads_file(clean):
    (clean / "VERSION").write_text("  3.4.5\n")
    assert version.get() == "3.4.5"


def test_get_missing_file(clean):
    assert version.get() == ""


def test_build_meta_variable(clean, monkeypatch):
    monkeypatch.setattr(version, "VERSION_META", "dev")
    assert version.get_build_meta() == "-dev"


def test_build_meta_file(clean):
    (clean / "BUILDMETA").write_text("rc1\n")
    assert version.get_build_meta() == "-rc1"


def test_build_meta_missing(clean):
    assert version.get_build_meta() == ""


def test_git_commit_variable(clean, monkeypatch):
    monkeypatch.setattr(version, "GIT_COMMIT", "0123456789abcdef")
    assert version.get_git_commit() == "0123456789abcdef"


def test_git_commit_without_git(clean, monkeypatch, tmp_path):
    empty = tmp_path / "empty-bin"
    empty.mkdir()
    monkeypatch.setenv("PATH", str(empty))
    assert version.get_git_commit() == ""


def test_version_details(clean, monkeypatch):
    monkeypatch.setattr(version, "VERSION", "1.0.0")
    monkeypatch.setattr(version, "GIT_COMMIT", "abcdef0123456")
    assert version.get_version_details() == "lvm-1.0.0-abcdef0"
    assert version.get_version_details() == "lvm-" + version.verbose()


def test_verbose_truncates_commit(clean, monkeypatch):
    monkeypatch.setattr(version, "VERSION", "1.0.0")
    monkeypatch.setattr(version, "GIT_COMMIT", "abcdef0123456")
    result = version.verbose()
    assert result.startswith("1.0.0-")
    assert len(result.split("-")[1]) == 7


def test_short_commit_raises(clean, monkeypatch):
    monkeypatch.setattr(version, "VERSION", "1.0.0")
    monkeypatch.setattr(version, "GIT_COMMIT", "abc")
    with pytest.raises(ValueError):
        version.verbose()
    with pytest.raises(ValueError):
        version.get_version_details()