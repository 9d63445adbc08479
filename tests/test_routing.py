"""Tests for model routing."""

import pytest

from velto_credits.routing import (
    CLAUDE_35_HAIKU,
    GEMINI_20_FLASH,
    GEMINI_25_FLASH,
    ROUTING_TABLE,
    TaskCategory,
    TaskFamily,
    fallback_for,
    max_output_tokens_for,
    model_info,
    select_model,
    temperature_for,
)
from velto_credits.tiers import Tier


class TestSelectModel:
    """Tests for select_model."""

    @pytest.mark.parametrize("task", list(TaskCategory))
    def test_free_tier(self, task: TaskCategory) -> None:
        """Test free users get Gemini 2.0 Flash for every task."""
        assert select_model(task, Tier.FREE) == GEMINI_20_FLASH

    @pytest.mark.parametrize("tier", [Tier.STARTER, Tier.INDUSTRY])
    @pytest.mark.parametrize("task", list(TaskCategory))
    def test_mid_tiers(self, task: TaskCategory, tier: Tier) -> None:
        """Test starter and industry get Claude 3.5 Haiku for every task."""
        assert select_model(task, tier) == CLAUDE_35_HAIKU

    @pytest.mark.parametrize("tier", [Tier.ULTRA, Tier.LIFETIME])
    def test_top_tiers(self, tier: Tier) -> None:
        """Test top tiers get Gemini 2.5 Flash, except coaching."""
        assert select_model("content-generation", tier) == GEMINI_25_FLASH
        assert select_model("bulk-generation", tier) == GEMINI_25_FLASH
        assert select_model("research", tier) == GEMINI_25_FLASH
        assert select_model("custom-research", tier) == GEMINI_25_FLASH
        assert select_model("general-qa", tier) == GEMINI_25_FLASH
        assert select_model("coaching", tier) == CLAUDE_35_HAIKU

    def test_override_wins(self) -> None:
        """Test an explicit model override is used as-is."""
        assert select_model("coaching", Tier.FREE, "meta/llama-3-70b") == "meta/llama-3-70b"

    def test_unknown_tier_routes_as_free(self) -> None:
        """Test malformed tiers get the free model."""
        assert select_model("general-qa", "bogus") == GEMINI_20_FLASH

    def test_unknown_task_rejected(self) -> None:
        """Test unknown task categories raise ValueError."""
        with pytest.raises(ValueError, match="Unknown task category"):
            select_model("poetry", Tier.FREE)

    def test_every_cell_is_a_named_model(self) -> None:
        """Test each family and tier maps to exactly one concrete model."""
        for family in TaskFamily:
            assert set(ROUTING_TABLE[family]) == set(Tier)
            assert all(ROUTING_TABLE[family].values())


class TestParameters:
    """Tests for fallback and sampling parameters."""

    def test_fallback(self) -> None:
        """Test only the top premium model has a fallback."""
        assert fallback_for(GEMINI_25_FLASH) == GEMINI_20_FLASH
        assert fallback_for(GEMINI_20_FLASH) is None
        assert fallback_for(CLAUDE_35_HAIKU) is None

    def test_temperature(self) -> None:
        """Test research runs cold and everything else at 0.7."""
        assert temperature_for("research") == 0.1
        assert temperature_for(TaskCategory.CUSTOM_RESEARCH) == 0.7
        assert temperature_for("coaching") == 0.7

    def test_max_output_tokens(self) -> None:
        """Test bulk generation gets the larger output budget."""
        assert max_output_tokens_for("bulk-generation") == 4000
        assert max_output_tokens_for("content-generation") == 2000


class TestModelInfo:
    """Tests for model_info."""

    def test_free(self) -> None:
        """Test display info for free users."""
        info = model_info("research", "free")
        assert (info.name, info.provider, info.tier) == ("Gemini 2.0 Flash", "Google", "Free")

    def test_ultra_coaching(self) -> None:
        """Test ultra coaching shows Claude."""
        info = model_info("coaching", Tier.ULTRA)
        assert (info.name, info.provider, info.tier) == ("Claude 3.5 Haiku", "Anthropic", "Ultra")

    def test_industry(self) -> None:
        """Test industry users see their own tier label."""
        info = model_info("general-qa", Tier.INDUSTRY)
        assert info.name == "Claude 3.5 Haiku"
        assert info.tier == "Industry"
