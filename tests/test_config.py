from __future__ import annotations

import pytest

from exam_pilot.core.config import ConfigStore, PipelineConfig


def test_defaults_keep_thresholds_separate():
    cfg = PipelineConfig()

    assert cfg.execution_confidence_threshold == 0.8
    assert cfg.similarity_threshold == 0.7
    assert cfg.detection_floor == 0.5
    assert cfg.web_confidence_cap == 0.8
    assert not cfg.web_search_enabled


@pytest.mark.parametrize(
    "changes",
    [
        {"execution_confidence_threshold": 1.2},
        {"detection_floor": -0.1},
        {"reasoning_timeout_s": 0},
        {"polling_interval_s": -1.0},
        {"post_action_delay_s": -0.5},
        {"knowledge_max_results": 0},
    ],
)
def test_invalid_values_are_rejected(changes):
    with pytest.raises(ValueError):
        PipelineConfig(**changes)


def test_zero_post_action_delay_is_allowed():
    assert PipelineConfig(post_action_delay_s=0).post_action_delay_s == 0


def test_from_env_reads_prefixed_variables():
    cfg = PipelineConfig.from_env(
        {
            "EXAM_PILOT_EXECUTION_CONFIDENCE_THRESHOLD": "0.9",
            "EXAM_PILOT_KNOWLEDGE_MAX_RESULTS": "3",
            "EXAM_PILOT_WEB_SEARCH_ENABLED": "yes",
            "EXAM_PILOT_POLLING_INTERVAL_S": " ",
            "UNRELATED": "1",
        }
    )

    assert cfg.execution_confidence_threshold == 0.9
    assert cfg.knowledge_max_results == 3
    assert cfg.web_search_enabled is True
    assert cfg.polling_interval_s == 2.0


def test_from_env_rejects_garbage():
    with pytest.raises(ValueError):
        PipelineConfig.from_env({"EXAM_PILOT_WEB_SEARCH_ENABLED": "maybe"})
    with pytest.raises(ValueError):
        PipelineConfig.from_env({"EXAM_PILOT_LOOKUP_TIMEOUT_S": "soon"})


def test_store_swaps_whole_snapshots():
    store = ConfigStore()
    before = store.snapshot()

    after = store.update(similarity_threshold=0.6, web_search_enabled=True)

    assert before.similarity_threshold == 0.7
    assert after.similarity_threshold == 0.6
    assert store.snapshot() is after


def test_store_rejects_unknown_or_invalid_updates():
    store = ConfigStore()
    original = store.snapshot()

    with pytest.raises(ValueError):
        store.update(colour="blue")
    with pytest.raises(ValueError):
        store.update(detection_floor=3.0)

    assert store.snapshot() is original
    assert original.to_dict()["detection_floor"] == 0.5


def test_store_coerces_update_values():
    store = ConfigStore()

    cfg = store.update(detection_floor="0.9", knowledge_max_results="3", web_search_enabled="yes", polling_interval_s=1)

    assert cfg.detection_floor == 0.9
    assert cfg.knowledge_max_results == 3
    assert cfg.web_search_enabled is True
    assert isinstance(cfg.polling_interval_s, float)
    with pytest.raises(ValueError):
        store.update(detection_floor="high")
    with pytest.raises(ValueError):
        store.update(web_search_enabled=1)
    with pytest.raises(ValueError):
        store.update(knowledge_max_results=2.5)
    assert store.snapshot() is cfg
