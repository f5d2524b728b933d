import pytest

from origin_mask.cache.captured_text import CapturedTextCache, extract_text


class FakeClock:
    def __init__(self, now: float = 500.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def slot(clock):
    return CapturedTextCache(ttl=60, clock=clock)


class TestExtractText:
    def test_first_match(self):
        html = "<h1>  Your   plan\n is ready </h1><h1>Second</h1>"

        assert extract_text(html, "h1") == "Your plan is ready"

    def test_nested_markup(self):
        html = '<div class="choice"><span>Lose</span> <b>5 kg</b></div>'

        assert extract_text(html, ".choice") == "Lose 5 kg"

    def test_missing_or_empty(self):
        assert extract_text("<p>x</p>", "h1") is None
        assert extract_text("<h1>   </h1>", "h1") is None


class TestCapturedTextCache:
    def test_initially_empty_and_stale(self, slot):
        snapshot = slot.snapshot()

        assert snapshot.text is None
        assert snapshot.captured_at is None
        assert snapshot.refreshing is False
        assert slot.is_stale()

    def test_refresh_cycle(self, slot, clock):
        token = slot.begin_refresh()

        assert slot.snapshot().refreshing is True
        assert slot.complete_refresh("Headline", token)

        snapshot = slot.snapshot()
        assert snapshot.text == "Headline"
        assert snapshot.captured_at == clock.now
        assert snapshot.refreshing is False
        assert not slot.is_stale()

        clock.now += 60
        assert slot.is_stale()

    def test_single_refresh_at_a_time(self, slot):
        assert slot.begin_refresh() is not None
        assert slot.begin_refresh() is None

        slot.fail_refresh()

        assert slot.begin_refresh() is not None

    def test_set_selected_wins_over_running_refresh(self, slot):
        token = slot.begin_refresh()
        slot.set_selected("Chosen by user")

        assert not slot.complete_refresh("Scraped", token)
        assert slot.snapshot().text == "Chosen by user"
        assert slot.snapshot().refreshing is False

    def test_failed_refresh_keeps_previous_text(self, slot):
        slot.set_selected("Previous")
        slot.begin_refresh()

        slot.fail_refresh()

        assert slot.snapshot().text == "Previous"

    def test_refresh_without_text_keeps_previous(self, slot):
        slot.set_selected("Previous")
        token = slot.begin_refresh()

        assert not slot.complete_refresh(None, token)
        assert slot.snapshot().text == "Previous"

    def test_set_selected_returns_snapshot(self, slot, clock):
        snapshot = slot.set_selected("Goal: run 5k")

        assert snapshot.text == "Goal: run 5k"
        assert snapshot.captured_at == clock.now

    def test_empty_refresh_waits_a_full_ttl(self, slot, clock):
        token = slot.begin_refresh()

        assert not slot.complete_refresh(None, token)
        assert not slot.is_stale()

        clock.now += 59
        assert not slot.is_stale()
        clock.now += 1
        assert slot.is_stale()

    def test_failed_refresh_waits_a_full_ttl(self, slot, clock):
        slot.begin_refresh()
        slot.fail_refresh()

        assert not slot.is_stale()
        assert slot.snapshot().captured_at is None

        clock.now += 60
        assert slot.is_stale()
