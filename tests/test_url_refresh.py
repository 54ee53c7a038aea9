"""
Unit tests for reference URL refresh.
"""

from ai_batch_guard.core.items import ReferenceUrl
from ai_batch_guard.core.url_refresh import ReferenceUrlRefresher

from conftest import FakeClock

REFS = (
    ReferenceUrl(url="https://cdn/a.png?sig=old", locator="refs/a.png"),
    ReferenceUrl(url="https://cdn/b.png?sig=old", locator="refs/b.png"),
)


class TestReferenceUrlRefresher:

    def setup_method(self):
        self.clock = FakeClock()
        self.signed = []

        def signer(locator):
            self.signed.append(locator)
            if locator == "refs/broken.png":
                raise ValueError("no such object")
            return f"https://cdn/{locator}?sig=new"

        self.refresher = ReferenceUrlRefresher(signer, staleness_seconds=300, clock=self.clock)

    def test_fresh_batch_keeps_original_urls(self):
        started = self.clock.now
        self.clock.advance(300)
        assert self.refresher.refresh(started, REFS) == [ref.url for ref in REFS]
        assert self.signed == []

    def test_stale_batch_rederives_urls(self):
        started = self.clock.now
        self.clock.advance(301)
        assert self.refresher.refresh(started, REFS) == [
            "https://cdn/refs/a.png?sig=new",
            "https://cdn/refs/b.png?sig=new",
        ]
        assert self.signed == ["refs/a.png", "refs/b.png"]

    def test_failed_reference_is_dropped(self):
        started = self.clock.now
        self.clock.advance(1000)
        refs = REFS + (ReferenceUrl(url="https://cdn/broken.png", locator="refs/broken.png"),)
        refreshed = self.refresher.refresh(started, refs)
        assert len(refreshed) == 2
        assert "broken" not in " ".join(refreshed)

    def test_no_references(self):
        assert self.refresher.refresh(self.clock.now - 1000, ()) == []
