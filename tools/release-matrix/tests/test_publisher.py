from __future__ import annotations

from pathlib import Path

import pytest

from aware_release_matrix.config import PlatformFamily
from aware_release_matrix.errors import PublishFailure
from aware_release_matrix.packaging import Artifact
from aware_release_matrix.publish import ArtifactPublisher

from conftest import RaisingAdapter, RecordingAdapter


@pytest.fixture()
def artifact(tmp_path: Path) -> Artifact:
    path = tmp_path / "subspace-cli-ubuntu-aarch64-v2.0.0"
    path.write_bytes(b"binary")
    return Artifact(name=path.name, path=path, signed=False, platform=PlatformFamily.LINUX, suffix="ubuntu-aarch64-v2.0.0")


def _publisher(config, ephemeral, permanent) -> ArtifactPublisher:
    return ArtifactPublisher(ephemeral=ephemeral, permanent=permanent, permanent_predicate=config.permanent_publish_predicate())


def test_tag_push_publishes_to_both_sinks(config, make_context, artifact) -> None:
    ephemeral, permanent = RecordingAdapter("ephemeral"), RecordingAdapter("release")
    context = make_context(ref_kind="tag", ref_name="v2.0.0")

    result = _publisher(config, ephemeral, permanent).publish(artifact, context)

    assert ephemeral.published == [artifact.name]
    assert permanent.published == [artifact.name]
    assert result.permanent_attempted
    assert not result.permanent_failed


def test_tag_push_from_fork_still_publishes_permanently(config, make_context, artifact) -> None:
    permanent = RecordingAdapter("release")
    context = make_context(ref_kind="tag", ref_name="v2.0.0", repository_owner="fork")

    _publisher(config, RecordingAdapter(), permanent).publish(artifact, context)

    assert permanent.published == [artifact.name]


@pytest.mark.parametrize(
    "overrides",
    [{"ref_kind": "branch"}, {"event": "pull_request", "ref_kind": "tag"}, {"event": "workflow_dispatch"}],
)
def test_permanent_publish_gated_to_tag_pushes(config, make_context, artifact, overrides) -> None:
    permanent = RecordingAdapter("release")

    result = _publisher(config, RecordingAdapter(), permanent).publish(artifact, make_context(**overrides))

    assert permanent.published == []
    assert not result.permanent_attempted


def test_ephemeral_failure_raises(config, make_context, artifact) -> None:
    permanent = RecordingAdapter("release")
    publisher = _publisher(config, RecordingAdapter("ephemeral", status="failed"), permanent)

    with pytest.raises(PublishFailure) as excinfo:
        publisher.publish(artifact, make_context(ref_kind="tag", ref_name="v2.0.0"))

    assert excinfo.value.stage == "upload"
    assert permanent.published == []


def test_permanent_failure_is_recorded_not_raised(config, make_context, artifact) -> None:
    publisher = _publisher(config, RecordingAdapter(), RecordingAdapter("release", status="failed"))

    result = publisher.publish(artifact, make_context(ref_kind="tag", ref_name="v2.0.0"))

    assert result.ephemeral.ok
    assert result.permanent_failed
    assert result.to_dict()["permanent"]["status"] == "failed"


def test_no_permanent_adapter_means_no_permanent_publish(config, make_context, artifact) -> None:
    publisher = _publisher(config, RecordingAdapter(), None)

    assert not publisher.publishes_permanently(make_context(ref_kind="tag", ref_name="v2.0.0"))
    assert publisher.publish(artifact, make_context(ref_kind="tag")).permanent is None


def test_permanent_adapter_exception_is_recorded_not_raised(config, make_context, artifact) -> None:
    ephemeral = RecordingAdapter("ephemeral")
    publisher = _publisher(config, ephemeral, RaisingAdapter(RuntimeError("socket closed mid-upload")))

    result = publisher.publish(artifact, make_context(ref_kind="tag", ref_name="v2.0.0"))

    assert result.ephemeral.ok
    assert ephemeral.published == [artifact.name]
    assert result.permanent_failed
    assert result.permanent is not None and result.permanent.adapter == "exploding"
    assert "socket closed mid-upload" in result.permanent.logs[0]
