"""
Tests for the capability catalog and backend selection.
"""

from dataclasses import replace

import pytest

from conftest import StaticProvider, make_configuration
from image_studio_backend.catalog import ModelCapabilityCatalog
from image_studio_backend.configuration import ConfigurationCache
from image_studio_backend.errors import RequestValidationError
from image_studio_backend.registry import BackendRegistry
from image_studio_backend.selector import ModelSelector


def make_selector(configuration, fake_backends):
    registry = BackendRegistry(ConfigurationCache(StaticProvider(configuration)), client_factory=fake_backends)
    return ModelSelector(registry)


class TestCatalog:
    """Tests for ModelCapabilityCatalog."""

    def test_backends_in_declared_order(self):
        catalog = ModelCapabilityCatalog()
        assert catalog.backend_ids() == ["gemini", "sora", "chatgpt"]

    def test_capabilities_of_known_backend(self):
        gemini = ModelCapabilityCatalog().capabilities_of("gemini")
        assert gemini.quality == 10
        assert gemini.speed == 7
        assert gemini.supports({"optimize", "edit", "refine"})
        assert gemini.to_dict()["cost"] == "high"

    def test_capabilities_of_unknown_backend(self):
        with pytest.raises(KeyError):
            ModelCapabilityCatalog().capabilities_of("dalle")

    def test_requirement_for_unknown_task(self):
        with pytest.raises(RequestValidationError):
            ModelCapabilityCatalog().requirement_for("upscale")

    def test_priority_order_is_quality_descending(self):
        assert ModelCapabilityCatalog().priority_order() == ["gemini", "sora", "chatgpt"]


class TestRanking:
    """Tests for ModelSelector.rank."""

    def test_rank_all_available_optimize(self, fake_backends):
        ranking = make_selector(make_configuration(), fake_backends).rank("optimize")
        assert [(r.backend_id, r.score) for r in ranking] == [("gemini", 18), ("sora", 13), ("chatgpt", 12)]

    def test_rank_refine_scores(self, fake_backends):
        ranking = make_selector(make_configuration(), fake_backends).rank("refine")
        assert [(r.backend_id, r.score) for r in ranking] == [("gemini", 18), ("sora", 16), ("chatgpt", 15)]

    def test_unavailable_backend_is_penalized(self, fake_backends):
        ranking = make_selector(make_configuration("sora", "chatgpt"), fake_backends).rank("edit")
        scores = {r.backend_id: r for r in ranking}
        assert scores["gemini"].score == 8
        assert scores["gemini"].available is False
        assert "not configured" in scores["gemini"].reason
        assert ranking[0].backend_id == "sora"

    def test_ties_keep_catalog_order(self, fake_backends):
        base = ModelCapabilityCatalog().capabilities_of("chatgpt")
        twins = (replace(base, id="sora"), replace(base, id="chatgpt"))
        catalog = ModelCapabilityCatalog(descriptors=twins)
        registry = BackendRegistry(ConfigurationCache(StaticProvider(make_configuration())), catalog, client_factory=fake_backends)
        ranking = ModelSelector(registry).rank("edit")
        assert [r.backend_id for r in ranking] == ["sora", "chatgpt"]
        assert ranking[0].score == ranking[1].score

    def test_nothing_available_scores_drop_by_ten(self, fake_backends):
        ranking = make_selector(None, fake_backends).rank("optimize")
        assert [(r.backend_id, r.score) for r in ranking] == [("gemini", 8), ("sora", 3), ("chatgpt", 2)]

    def test_available_ranking_filters(self, fake_backends):
        ranking = make_selector(make_configuration("chatgpt"), fake_backends).available_ranking("optimize")
        assert [r.backend_id for r in ranking] == ["chatgpt"]


class TestRecommend:
    """Tests for ModelSelector.recommend."""

    def test_available_preference_wins(self, fake_backends):
        selector = make_selector(make_configuration(), fake_backends)
        assert selector.recommend("optimize", "chatgpt") == "chatgpt"

    def test_unavailable_preference_is_ignored(self, fake_backends):
        selector = make_selector(make_configuration("sora", "chatgpt"), fake_backends)
        assert selector.recommend("optimize", "gemini") == "sora"

    def test_best_available_without_preference(self, fake_backends):
        assert make_selector(make_configuration(), fake_backends).recommend("edit") == "gemini"

    def test_static_order_when_nothing_available(self, fake_backends):
        assert make_selector(None, fake_backends).recommend("refine") == "gemini"

    def test_invalid_task_type(self, fake_backends):
        with pytest.raises(RequestValidationError):
            make_selector(make_configuration(), fake_backends).recommend("upscale")


class TestCapabilityFilter:
    """recommend() never picks a backend lacking the task's capabilities while a capable one is available."""

    def selector(self, fake_backends, capable_quality, configuration=None):
        catalog_defaults = ModelCapabilityCatalog()
        no_edit = replace(
            catalog_defaults.capabilities_of("gemini"),
            quality=10,
            capabilities=frozenset({"optimize", "refine"}),
        )
        with_edit = replace(catalog_defaults.capabilities_of("sora"), quality=capable_quality)
        catalog = ModelCapabilityCatalog(descriptors=(no_edit, with_edit))
        cache = ConfigurationCache(StaticProvider(configuration or make_configuration("gemini", "sora")))
        return ModelSelector(BackendRegistry(cache, catalog, client_factory=fake_backends))

    def test_capable_backend_beats_higher_quality(self, fake_backends):
        selector = self.selector(fake_backends, capable_quality=7)
        assert selector.recommend("edit") == "sora"
        ranking = {r.backend_id: r for r in selector.rank("edit")}
        assert ranking["gemini"].capable is False
        assert ranking["sora"].capable is True

    def test_capability_wins_over_score(self, fake_backends):
        selector = self.selector(fake_backends, capable_quality=4)
        assert selector.rank("edit")[0].backend_id == "gemini"
        assert selector.recommend("edit") == "sora"

    def test_incapable_backend_used_when_alone(self, fake_backends):
        selector = self.selector(fake_backends, capable_quality=7, configuration=make_configuration("gemini"))
        assert selector.recommend("edit") == "gemini"

    def test_other_tasks_unaffected(self, fake_backends):
        assert self.selector(fake_backends, capable_quality=7).recommend("optimize") == "gemini"
