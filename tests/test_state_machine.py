import pytest

from adworker.pipeline.errors import NotFoundError, StateConflictError, ValidationError
from adworker.pipeline.models import (
    AssetType,
    ProjectStatus,
    SettingsPatch,
    UserSettingsPatch,
    can_transition,
)

from conftest import make_project


def test_lifecycle_graph():
    assert can_transition(ProjectStatus.DRAFT, ProjectStatus.QUEUED)
    assert can_transition(ProjectStatus.IMAGE_READY, ProjectStatus.GENERATING_VIDEO)
    assert can_transition(ProjectStatus.FAILED, ProjectStatus.QUEUED)
    assert not can_transition(ProjectStatus.COMPLETED, ProjectStatus.QUEUED)
    assert not can_transition(ProjectStatus.IMAGE_READY, ProjectStatus.FAILED)
    assert not can_transition(ProjectStatus.DRAFT, ProjectStatus.COMPLETED)


@pytest.mark.asyncio
async def test_create_project_starts_in_draft(projects):
    project = await make_project(projects, aspect_ratio="1:1")

    assert project.status == ProjectStatus.DRAFT
    assert project.settings.aspect_ratio == "1:1"
    assert project.settings.usps == ["Dishwasher safe", "Keeps heat"]


@pytest.mark.asyncio
async def test_transition_applies_status_and_settings_together(projects):
    project = await make_project(projects)

    updated = await projects.transition(
        project.id,
        ProjectStatus.GENERATING_IMAGE,
        expected=ProjectStatus.DRAFT,
        settings_patch=SettingsPatch(stage_job_id="job-9"),
    )

    assert updated.status == ProjectStatus.GENERATING_IMAGE
    assert updated.settings.stage_job_id == "job-9"
    assert updated.settings.product_name == "Ceramic Mug"
    assert updated.settings_version == project.settings_version + 1


@pytest.mark.asyncio
async def test_transition_rejects_unexpected_current_state(projects):
    project = await make_project(projects)

    with pytest.raises(StateConflictError):
        await projects.transition(
            project.id, ProjectStatus.GENERATING_IMAGE, expected=ProjectStatus.QUEUED
        )

    assert (await projects.get_project(project.id)).status == ProjectStatus.DRAFT


@pytest.mark.asyncio
async def test_transition_rejects_moves_outside_the_graph(projects):
    project = await make_project(projects)

    with pytest.raises(StateConflictError):
        await projects.transition(project.id, ProjectStatus.COMPLETED)


@pytest.mark.asyncio
async def test_failed_requires_error_details(projects):
    project = await make_project(projects)

    with pytest.raises(ValidationError):
        await projects.transition(project.id, ProjectStatus.FAILED)

    failed = await projects.fail(project.id, "Photoroom API error (500)")
    assert failed.status == ProjectStatus.FAILED
    assert failed.settings.last_error == "Photoroom API error (500)"
    assert failed.settings.failed_at


@pytest.mark.asyncio
async def test_unknown_project_raises_not_found(projects):
    with pytest.raises(NotFoundError):
        await projects.get_project("missing")


@pytest.mark.asyncio
async def test_settings_edit_merges_without_clobbering(projects):
    project = await make_project(projects)
    await projects.transition(
        project.id,
        ProjectStatus.GENERATING_IMAGE,
        settings_patch=SettingsPatch(active_scene_asset_id="scene-1"),
    )

    updated = await projects.update_settings(project.id, SettingsPatch(music_theme="calm"))

    assert updated.settings.music_theme == "calm"
    assert updated.settings.active_scene_asset_id == "scene-1"
    assert updated.settings.product_name == "Ceramic Mug"
    assert updated.status == ProjectStatus.GENERATING_IMAGE


@pytest.mark.asyncio
async def test_select_scene_restores_prompt(projects):
    project = await make_project(projects)
    first = await projects.create_asset(
        project.id, AssetType.IMAGE_SCENE, "photoroom", "https://s/1.png", meta={"prompt": "beach"}
    )
    await projects.create_asset(
        project.id, AssetType.IMAGE_SCENE, "photoroom", "https://s/2.png", meta={"prompt": "forest"}
    )

    updated = await projects.select_scene(project.id, first.id)

    assert updated.settings.active_scene_asset_id == first.id
    assert updated.settings.scene_prompt == "beach"


@pytest.mark.asyncio
async def test_select_scene_rejects_foreign_or_wrong_assets(projects):
    project = await make_project(projects)
    other = await make_project(projects)
    foreign = await projects.create_asset(other.id, AssetType.IMAGE_SCENE, "photoroom", "https://s/x.png")
    audio = await projects.create_asset(project.id, AssetType.AUDIO_TTS, "yandex-cloud", "https://s/a.mp3")

    with pytest.raises(ValidationError):
        await projects.select_scene(project.id, foreign.id)
    with pytest.raises(ValidationError):
        await projects.select_scene(project.id, audio.id)


@pytest.mark.asyncio
async def test_assets_listed_newest_first(projects):
    project = await make_project(projects)
    older = await projects.create_asset(project.id, AssetType.IMAGE_SCENE, "photoroom", "https://s/1.png")
    newer = await projects.create_asset(project.id, AssetType.IMAGE_SCENE, "photoroom", "https://s/2.png")

    scenes = await projects.find_assets(project.id, AssetType.IMAGE_SCENE)

    assert [a.id for a in scenes] == [newer.id, older.id]


def test_user_settings_patch_rejects_pipeline_keys():
    with pytest.raises(ValueError):
        UserSettingsPatch(stageJobId="job-1")
    with pytest.raises(ValueError):
        UserSettingsPatch(aspectRatio="2:1")
    with pytest.raises(ValueError):
        UserSettingsPatch(usps=[f"usp {i}" for i in range(11)])
    with pytest.raises(ValueError):
        UserSettingsPatch(mainImage="cdn.example.com/mug.png")

    patch = UserSettingsPatch(productName="Mug", musicTheme="lofi")
    assert patch.to_patch() == {"productName": "Mug", "musicTheme": "lofi"}
