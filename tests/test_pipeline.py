"""End-to-end pipeline tests with a stand-in history filter."""

from pathlib import Path

import pytest
from git import Repo

from conftest import change_ids, history_paths, install_change_id_hook, make_repo, tracked_paths
from splitrepo import pipeline
from splitrepo.errors import ConsistencyError, MapFileError, PreconditionError
from splitrepo.pipeline import RunContext, Settings
from splitrepo.plan import RepoPair, parse_map_lines


def settings_for(workspace: Path, rows, **overrides) -> Settings:
    map_file = workspace / "repo.map"
    map_file.write_text("\n".join(rows) + "\n", encoding="utf-8")
    options = dict(map_file=map_file, workspace=workspace, new_branch="trunk")
    options.update(overrides)
    return Settings(**options)


def test_move_into_new_repository(tmp_path, recording_filter):
    source = make_repo(
        tmp_path / "repoA",
        [
            {"foo/a.txt": "one\n", "keep/k.txt": "k\n"},
            {"foo/sub/b.txt": "two\n"},
        ],
        branch="master",
    )

    created = pipeline.run(settings_for(tmp_path, ["repoA|foo|repoB|bar"]), recording_filter)

    assert created == ["repoB"]
    assert len(recording_filter.calls) == 1
    dest = Repo(tmp_path / "repoB")
    assert dest.active_branch.name == "trunk"
    assert tracked_paths(dest) == ["bar/a.txt", "bar/sub/b.txt"]
    for paths in history_paths(dest):
        assert not any(p.startswith("foo/") for p in paths)
        assert any(p.startswith("bar/") for p in paths)
    assert not (tmp_path / "repoB" / "repoA.old_repo").exists()
    assert [r.name for r in dest.remotes] == []

    assert source.active_branch.name == "work"
    assert tracked_paths(source) == ["keep/k.txt"]
    assert not (tmp_path / "repoA" / "foo").exists()
    assert source.head.commit.message.startswith(
        "Subdirectories 'foo' relocated to repo 'repoB'"
    )
    assert tracked_paths(source, "master") == ["foo/a.txt", "foo/sub/b.txt", "keep/k.txt"]


def test_root_moves_into_existing_repository(tmp_path, recording_filter):
    make_repo(tmp_path / "repoA", [{"a.txt": "a\n", "lib/x.c": "x\n"}])
    dest = make_repo(tmp_path / "repoB", [{"b.txt": "b\n"}], branch="master")
    master_head = dest.head.commit.hexsha

    created = pipeline.run(settings_for(tmp_path, ["repoA|.|repoB|sub"]), recording_filter)

    assert created == []
    assert dest.active_branch.name == "work"
    assert {"sub/a.txt", "sub/lib/x.c"} <= set(tracked_paths(dest))
    assert all(p.startswith("sub/") for p in tracked_paths(dest))
    assert dest.heads.master.commit.hexsha == master_head
    assert tracked_paths(dest, "master") == ["b.txt"]


def test_shared_pair_is_filtered_and_merged_once(tmp_path, recording_filter):
    make_repo(tmp_path / "repoA", [{"p/x/1.txt": "1\n", "p/z/2.txt": "2\n"}])

    pipeline.run(
        settings_for(tmp_path, ["repoA|p/x|repoB|y/x", "repoA|p/z|repoB|y/z"]),
        recording_filter,
    )

    assert len(recording_filter.calls) == 1
    assert recording_filter.calls[0][1] == ("p/x", "p/z")
    dest = Repo(tmp_path / "repoB")
    # A virgin destination takes the filtered history without a merge commit
    merges = [c for c in dest.iter_commits() if c.message.startswith("Merge select content")]
    assert merges == []
    assert {"y/x/1.txt", "y/z/2.txt"} <= set(tracked_paths(dest))


def test_metadata_is_moved_and_committed(tmp_path, recording_filter):
    make_repo(
        tmp_path / "repoA",
        [
            {
                "base/foo/centos/foo.spec": "Name: foo\nSummary: foo tool\n",
                "base/foo/centos/build_srpm.data": "TAR_NAME=foo\n",
                "centos_pkg_dirs": "base/foo\nbase/other\n",
            }
        ],
    )
    make_repo(tmp_path / "repoB", [{"README": "b\n"}])

    pipeline.run(settings_for(tmp_path, ["repoA|base/foo|repoB|bar"]), recording_filter)

    dest = Repo(tmp_path / "repoB")
    assert (tmp_path / "repoB" / "bar" / "centos" / "bar.spec").read_text() == (
        "Name: bar\nSummary: bar tool\n"
    )
    assert (tmp_path / "repoB" / "bar" / "centos" / "build_srpm.data").read_text() == "TAR_NAME=bar\n"
    assert (tmp_path / "repoB" / "centos_pkg_dirs").read_text() == "bar\n"
    assert dest.head.commit.message.startswith(
        "Config file changes to add 'bar' after relocation from 'repoA'"
    )
    assert dest.git.status("--porcelain").strip() == ""

    source = Repo(tmp_path / "repoA")
    assert (tmp_path / "repoA" / "centos_pkg_dirs").read_text() == "base/other\n"
    messages = [c.message.splitlines()[0] for c in source.iter_commits(max_count=2)]
    assert messages == [
        "Subdirectories 'base/foo' relocated to repo 'repoB'",
        "Config file changes to remove 'base/foo' after relocation to 'repoB'",
    ]


def test_explicit_sub_package_requires_follow_rename(tmp_path, recording_filter):
    make_repo(
        tmp_path / "repoA",
        [{"base/foo/centos/foo.spec": "Name: foo\n%package -n foo-libs\n", "README": "a\n"}],
    )
    make_repo(tmp_path / "repoB", [{"README": "b\n"}])
    client = make_repo(
        tmp_path / "repoC",
        [{"pkg/centos/client.spec": "Requires: foo\nRequires: foo-libs\n"}],
    )

    pipeline.run(settings_for(tmp_path, ["repoA|base/foo|repoB|bar"]), recording_filter)

    assert (tmp_path / "repoB" / "bar" / "centos" / "bar.spec").read_text() == (
        "Name: bar\n%package -n bar-libs\n"
    )
    assert (tmp_path / "repoC" / "pkg" / "centos" / "client.spec").read_text() == (
        "Requires: bar\nRequires: bar-libs\n"
    )
    assert client.active_branch.name == "work"
    assert client.head.commit.message.startswith(
        "Fix spec's Requires due to rename of package 'foo' to 'bar'"
    )


def test_commits_are_linked_with_depends_on(tmp_path, recording_filter):
    source = make_repo(
        tmp_path / "repoA",
        [{"base/foo/a.txt": "a\n", "centos_pkg_dirs": "base/foo\nbase/other\n"}],
    )
    install_change_id_hook(tmp_path / "repoA")
    dest = make_repo(tmp_path / "repoB", [{"README": "b\n"}])

    pipeline.run(settings_for(tmp_path, ["repoA|base/foo|repoB|bar"]), recording_filter)

    # The destination borrowed the source's hook
    assert (tmp_path / "repoB" / ".git" / "hooks" / "commit-msg").is_file()
    merge = next(
        c for c in dest.iter_commits() if c.message.startswith("Merge select content")
    )
    merge_ids = change_ids(merge.message)
    assert len(merge_ids) == 1
    add_config = dest.head.commit
    assert add_config.message.startswith("Config file changes to add 'bar'")
    assert change_ids(add_config.message, "Depends-On:") == merge_ids

    remove, remove_config = source.iter_commits(max_count=2)
    assert remove_config.message.startswith("Config file changes to remove 'base/foo'")
    assert remove.message.startswith("Subdirectories 'base/foo' relocated to repo 'repoB'")
    assert len(change_ids(remove.message)) == 1
    assert change_ids(remove.message, "Depends-On:") == change_ids(remove_config.message)
    assert change_ids(remove_config.message) != []


def test_malformed_map_mutates_nothing(tmp_path, recording_filter):
    make_repo(tmp_path / "repoA", [{"foo/a.txt": "a\n"}])
    settings = settings_for(tmp_path, ["repoA|foo|repoB", "repoA|foo|repoC|bar", "bad"])

    with pytest.raises(MapFileError) as excinfo:
        pipeline.run(settings, recording_filter)

    assert len(excinfo.value.problems) == 2
    assert not (tmp_path / "repoB").exists()
    assert not (tmp_path / "repoC").exists()
    assert recording_filter.calls == []


def test_missing_source_path_mutates_nothing(tmp_path, recording_filter):
    make_repo(tmp_path / "repoA", [{"foo/a.txt": "a\n"}])
    with pytest.raises(PreconditionError):
        pipeline.run(settings_for(tmp_path, ["repoA|nope|repoB|bar"]), recording_filter)
    assert not (tmp_path / "repoB").exists()


def test_merge_without_scratch_copy_is_a_consistency_error(tmp_path, recording_filter):
    make_repo(tmp_path / "repoA", [{"foo/a.txt": "a\n"}])
    plan = parse_map_lines(["repoA|foo|repoB|bar"], tmp_path, "centos")
    ctx = RunContext(
        settings=Settings(workspace=tmp_path),
        plan=plan,
        history_filter=recording_filter,
        scratch_root=tmp_path,
    )
    pipeline.provision(ctx)

    with pytest.raises(ConsistencyError, match="missing directory"):
        pipeline.merge_sources(ctx)


def test_provision_marks_states(tmp_path, recording_filter):
    make_repo(tmp_path / "repoA", [{"foo/a.txt": "a\n"}])
    make_repo(tmp_path / "repoC", [{"c.txt": "c\n"}], branch="master")
    plan = parse_map_lines(
        ["repoA|foo|repoB|bar", "repoA|foo|repoC|foo"], tmp_path, "centos"
    )
    ctx = RunContext(
        settings=Settings(workspace=tmp_path),
        plan=plan,
        history_filter=recording_filter,
        scratch_root=tmp_path,
    )

    pipeline.provision(ctx)

    assert ctx.states["repoB"].is_new and ctx.states["repoB"].is_virgin
    assert not ctx.states["repoC"].is_new and not ctx.states["repoC"].is_virgin
    assert not ctx.states["repoA"].is_new
    assert (tmp_path / "repoB" / ".git").is_dir()
    assert Repo(tmp_path / "repoC").active_branch.name == "work"
    assert ctx.scratch_dir(RepoPair("repoA", "repoB")) == (
        tmp_path.resolve() / "repoB" / "repoA.old_repo"
    )
