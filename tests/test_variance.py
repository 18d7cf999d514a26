"""
Unit tests for variance decomposition.
"""

from datetime import datetime

import pytest

from ai_cost_controller.core.fields import EventField
from ai_cost_controller.core.variance import NOISE_KEY, decompose_variance
from ai_cost_controller.storage.models import InferenceEvent


def _event(cost_usd: float, model: str = "gpt-4", prompt_class: str = "chat", retries: int = 0) -> InferenceEvent:
    return InferenceEvent(
        timestamp=datetime(2024, 1, 1),
        tenant_id="acme_corp",
        environment="prod",
        model=model,
        prompt_class=prompt_class,
        tokens_in=100,
        tokens_out=200,
        latency_ms=300.0,
        retries=retries,
        success=True,
        cost_usd=cost_usd,
    )


class TestDecomposeVariance:
    """Test attribution of cost variance to dimensions."""

    def test_too_few_events(self):
        """Windows under five events produce no decomposition."""
        events = [_event(0.01 * i) for i in range(1, 5)]
        assert decompose_variance(events) == {}

    def test_zero_variance(self):
        """A window of identical costs has nothing to attribute."""
        events = [_event(0.02) for _ in range(20)]
        assert decompose_variance(events) == {}

    def test_single_driver_explains_everything(self):
        """Cost that depends only on prompt class is attributed to it."""
        events = [_event(0.05, prompt_class="reporting") for _ in range(10)]
        events += [_event(0.01, prompt_class="chat") for _ in range(10)]

        result = decompose_variance(events)

        assert list(result) == ["model", "prompt_class", "retries", NOISE_KEY]
        assert result["prompt_class"] == pytest.approx(1.0)
        assert result["model"] == pytest.approx(0.0)
        assert result["retries"] == pytest.approx(0.0)
        assert result[NOISE_KEY] == pytest.approx(0.0, abs=1e-9)

    def test_constant_dimensions_leave_noise(self):
        """When every dimension is constant all variance is noise."""
        events = [_event(0.01 * (i % 7 + 1)) for i in range(30)]
        result = decompose_variance(events)

        assert result["model"] == pytest.approx(0.0, abs=1e-12)
        assert result["prompt_class"] == pytest.approx(0.0, abs=1e-12)
        assert result["retries"] == pytest.approx(0.0, abs=1e-12)
        assert result[NOISE_KEY] == pytest.approx(1.0)

    def test_fractions_stay_in_unit_interval(self):
        """Collinear dimensions may overlap but each fraction is clamped."""
        events = [_event(0.09, model="claude-3-opus", prompt_class="reporting", retries=2) for _ in range(8)]
        events += [_event(0.01, model="gpt-3.5-turbo", prompt_class="chat") for _ in range(12)]

        result = decompose_variance(events)

        for value in result.values():
            assert 0.0 <= value <= 1.0
        assert result["model"] == pytest.approx(1.0)
        assert result["prompt_class"] == pytest.approx(1.0)
        assert result[NOISE_KEY] == 0.0

    def test_custom_dimensions(self):
        """Only the requested dimensions are scored."""
        events = [_event(0.05, model="gpt-4") for _ in range(5)]
        events += [_event(0.01, model="gpt-3.5-turbo") for _ in range(5)]

        result = decompose_variance(events, dimensions=[EventField.MODEL])

        assert set(result) == {"model", NOISE_KEY}
        assert result["model"] == pytest.approx(1.0)
