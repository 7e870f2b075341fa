import pytest

from attribution_relay.config import SimilarityWeights
from attribution_relay.services.matcher import user_agent_similarity

from .conftest import ANDROID_UA, IPHONE_15_0, IPHONE_16_2, SDK_UA_16_2


def test_identical_iphone_agents_score_full():
    assert user_agent_similarity(IPHONE_16_2, IPHONE_16_2) == pytest.approx(1.0)


def test_sdk_agent_matches_browser_agent():
    assert user_agent_similarity(IPHONE_16_2, SDK_UA_16_2) == pytest.approx(1.0)


def test_major_version_mismatch_drops_os_component():
    assert user_agent_similarity(IPHONE_16_2, IPHONE_15_0) == pytest.approx(0.7)


def test_minor_version_is_ignored():
    other = IPHONE_16_2.replace("16_2", "16.5")
    assert user_agent_similarity(IPHONE_16_2, other) == pytest.approx(1.0)


def test_symmetric():
    pairs = [(IPHONE_16_2, ANDROID_UA), (IPHONE_15_0, SDK_UA_16_2), ("iPad; CPU OS 17_1", "ipad os 17_0")]
    for a, b in pairs:
        assert user_agent_similarity(a, b) == user_agent_similarity(b, a)


def test_case_insensitive():
    assert user_agent_similarity("IPHONE OS 16_2 MOBILE", "iphone os 16_2 mobile") == pytest.approx(1.0)


def test_ipad_family():
    assert user_agent_similarity("iPad; CPU OS 17_1 like Mac OS X", "ipad") == pytest.approx(0.5)


def test_mixed_family_contributes_nothing_but_other_checks_apply():
    # iPhone vs iPad：设备族不加分，系统大版本与 mobile 标记照常计分
    a = "iPhone; CPU iPhone OS 16_2 Mobile"
    b = "iPad; CPU OS 16_0 Mobile"
    assert user_agent_similarity(a, b) == pytest.approx(0.5)


def test_unrelated_agents_score_low():
    assert user_agent_similarity(IPHONE_16_2, ANDROID_UA) < 0.7


def test_empty_and_none_agents():
    assert user_agent_similarity("", "") == 0.0
    assert user_agent_similarity(None, IPHONE_16_2) == 0.0


def test_configured_weights():
    weights = SimilarityWeights(device_family=0.2, os_major=0.2, browser_marker=0.1)
    assert user_agent_similarity(IPHONE_16_2, IPHONE_16_2, weights) == pytest.approx(0.5)


@pytest.mark.parametrize("a,b", [
    (IPHONE_16_2, IPHONE_15_0),
    (IPHONE_16_2, ANDROID_UA),
    (SDK_UA_16_2, IPHONE_16_2),
    ("", IPHONE_16_2),
])
def test_score_within_unit_interval(a, b):
    assert 0.0 <= user_agent_similarity(a, b) <= 1.0
