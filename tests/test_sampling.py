from __future__ import annotations

import pytest
import torch

from omni_run.sampling import GreedySampler, TopKTopPSampler, make_sampler


def test_greedy_picks_argmax():
    assert GreedySampler()(torch.tensor([0.1, 3.0, -1.0, 2.9])) == 1


def test_make_sampler_zero_temperature_is_greedy():
    assert isinstance(make_sampler(0.0, 40, 0.8), GreedySampler)
    assert isinstance(make_sampler(0.7, 40, 0.8, seed=1), TopKTopPSampler)


def test_top_k_one_is_argmax():
    sampler = TopKTopPSampler(temperature=1.5, top_k=1, seed=3)
    logits = torch.tensor([0.0, 0.5, 4.0, 1.0])
    assert {sampler(logits) for _ in range(20)} == {2}


def test_top_p_keeps_dominant_token():
    sampler = TopKTopPSampler(temperature=1.0, top_p=0.5, seed=0)
    logits = torch.tensor([10.0, 0.0, 0.0, 0.0])
    assert {sampler(logits) for _ in range(20)} == {0}


def test_seed_makes_sampling_reproducible():
    logits = torch.zeros(50)
    a = TopKTopPSampler(temperature=1.0, seed=42)
    b = TopKTopPSampler(temperature=1.0, seed=42)
    assert [a(logits) for _ in range(10)] == [b(logits) for _ in range(10)]


def test_top_k_limits_choices():
    sampler = TopKTopPSampler(temperature=1.0, top_k=2, seed=5)
    logits = torch.tensor([5.0, 4.9, -3.0, -3.0, -3.0])
    assert {sampler(logits) for _ in range(50)} <= {0, 1}


def test_rejects_zero_temperature():
    with pytest.raises(ValueError):
        TopKTopPSampler(temperature=0.0)
