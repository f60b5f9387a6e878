"""
Tests for report assembly — the end-to-end traffic scenarios, trend
baseline handling and the snapshot side effect.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

from api.services.report import build_report
from api.services.snapshots import get_snapshot
from tests.conftest import (
    NOW,
    SITE,
    days_ago,
    make_event,
    make_page_view,
    make_snapshot,
    make_visitor,
    minutes_ago,
)

TODAY = NOW.date()
YESTERDAY = TODAY - timedelta(days=1)


class TestScenarios:
    async def test_multi_page_session(self, db_session, seed, writer):
        """3 page views in one session over 10 minutes."""
        await seed(
            make_visitor("s1", minutes_ago(20), last_visit=minutes_ago(10)),
            make_page_view("s1", minutes_ago(20), "https://acme.test/"),
            make_page_view("s1", minutes_ago(15), "https://acme.test/listings"),
            make_page_view("s1", minutes_ago(10), "https://acme.test/contact"),
        )
        report = await build_report(db_session, SITE, 30, writer, now=NOW)
        assert report["sessions"] == 1
        assert report["pageViews"] == 3
        assert report["bounceRate"] == 0
        assert report["avgSessionDuration"] == 600

    async def test_single_page_session_bounces(self, db_session, seed, writer):
        await seed(make_visitor("s2", minutes_ago(5)), make_page_view("s2", minutes_ago(5)))
        report = await build_report(db_session, SITE, 30, writer, now=NOW)
        assert report["bounceRate"] == 100
        assert report["avgSessionDuration"] == 0

    async def test_session_started_before_window(self, db_session, seed, writer):
        await seed(
            make_visitor("s3", days_ago(10), last_visit=days_ago(2)),
            make_page_view("s3", days_ago(10)),
            make_page_view("s3", days_ago(2)),
        )
        report = await build_report(db_session, SITE, 7, writer, now=NOW)
        assert report["sessions"] == 1
        assert report["uniqueVisitors"] == 1
        assert report["pageViews"] == 1

    async def test_missing_yesterday_snapshot_gives_null_changes(self, db_session, seed, writer):
        await seed(make_visitor("s1", minutes_ago(5)), make_page_view("s1", minutes_ago(5)))
        report = await build_report(db_session, SITE, 30, writer, now=NOW)
        assert report["percentageChanges"]["pageViews"] is None
        assert all(v is None for v in report["percentageChanges"].values())

    async def test_duration_spans_events_and_page_views(self, db_session, seed, writer):
        await seed(
            make_visitor("s5", minutes_ago(20)),
            make_event("s5", minutes_ago(30)),
            make_page_view("s5", minutes_ago(20)),
            make_event("s5", minutes_ago(5)),
        )
        report = await build_report(db_session, SITE, 30, writer, now=NOW)
        assert report["avgSessionDuration"] == 25 * 60
        assert report["eventsCount"] == 2


class TestPercentageChanges:
    async def test_against_yesterday(self, db_session, seed, writer):
        await seed(
            make_snapshot(YESTERDAY, page_views=2, unique_visitors=1, sessions=1,
                          avg_session_duration=0, bounce_rate=100),
            make_visitor("a", minutes_ago(20)),
            make_visitor("b", minutes_ago(20)),
            make_page_view("a", minutes_ago(20)),
            make_page_view("a", minutes_ago(10)),
            make_page_view("b", minutes_ago(15)),
        )
        report = await build_report(db_session, SITE, 30, writer, now=NOW)
        assert report["percentageChanges"] == {
            "pageViews": 50,
            "uniqueVisitors": 100,
            "sessions": 100,
            "avgSessionDuration": 100,
            "bounceRate": -50,
        }

    async def test_older_snapshot_is_not_a_baseline(self, db_session, seed, writer):
        await seed(make_snapshot(TODAY - timedelta(days=3), page_views=9))
        report = await build_report(db_session, SITE, 30, writer, now=NOW)
        assert report["percentageChanges"]["pageViews"] is None


class TestReportShape:
    async def test_fields(self, db_session, seed, writer):
        await seed(make_visitor("s1", minutes_ago(5)), make_page_view("s1", minutes_ago(5)))
        report = await build_report(db_session, SITE, 30, writer, now=NOW)
        for key in (
            "pageViews", "uniqueVisitors", "sessions", "avgSessionDuration", "bounceRate",
            "eventsCount", "topPages", "trafficSources", "geographicData", "percentageChanges",
            "recentPageViews", "recentEvents", "visitors", "hasEverBeenTracked", "lastUpdated",
        ):
            assert key in report
        assert report["lastUpdated"] == NOW.isoformat()

    async def test_breakdowns(self, db_session, seed, writer):
        await seed(
            make_visitor("a", minutes_ago(30), country_code="US"),
            make_visitor("b", minutes_ago(30), country_code="US"),
            make_visitor("c", minutes_ago(30), country_code="CA"),
            make_page_view("a", minutes_ago(30), "/", utm_source="google"),
            make_page_view("b", minutes_ago(25), "/", referrer="https://news.test/"),
            make_page_view("c", minutes_ago(20), "/pricing"),
        )
        report = await build_report(db_session, SITE, 30, writer, now=NOW)
        assert report["topPages"] == [{"page": "/", "views": 2}, {"page": "/pricing", "views": 1}]
        assert report["trafficSources"] == {"google": 1, "referrer": 1, "direct": 1}
        assert report["geographicData"] == [
            {"country": "US", "visitors": 2},
            {"country": "CA", "visitors": 1},
        ]

    async def test_event_only_sessions_excluded_from_bounce(self, db_session, seed, writer):
        await seed(
            make_visitor("viewer", minutes_ago(10)),
            make_visitor("clicker", minutes_ago(10)),
            make_page_view("viewer", minutes_ago(10)),
            make_event("clicker", minutes_ago(9)),
        )
        report = await build_report(db_session, SITE, 30, writer, now=NOW)
        assert report["sessions"] == 2
        assert report["eventOnlySessions"] == 1
        assert report["bounceRate"] == 100

    async def test_recent_samples_truncated(self, db_session, seed, writer, mock_settings):
        mock_settings.recent_sample_size = 3
        await seed(
            make_visitor("s1", minutes_ago(50)),
            *[make_page_view("s1", minutes_ago(i + 1), f"/p{i}") for i in range(5)],
        )
        report = await build_report(db_session, SITE, 30, writer, now=NOW)
        assert report["pageViews"] == 5
        assert len(report["recentPageViews"]) == 3
        assert report["recentPageViews"][0]["page_url"] == "/p0"

    async def test_has_ever_been_tracked(self, db_session, seed, writer):
        await seed(make_visitor("old", days_ago(400)), make_page_view("old", days_ago(400)))
        report = await build_report(db_session, SITE, 7, writer, now=NOW)
        assert report["pageViews"] == 0
        assert report["totalHistoricalPageViews"] == 1
        assert report["hasEverBeenTracked"] is True

    async def test_never_tracked(self, db_session, writer):
        report = await build_report(db_session, SITE, 7, writer, now=NOW)
        assert report["hasEverBeenTracked"] is False
        assert report["sessions"] == 0
        assert report["bounceRate"] == 0

    async def test_integrity_issues_reported(self, db_session, seed, writer):
        await seed(make_page_view("orphan", minutes_ago(3)))
        report = await build_report(db_session, SITE, 7, writer, now=NOW)
        assert report["pageViews"] == 1
        assert report["dataIntegrityIssues"][0]["type"] == "orphaned_page_views"

    async def test_session_reused_on_other_site_does_not_bounce(self, db_session, seed, writer):
        # the visitor row belongs to another site, so this site has no sessions
        await seed(
            make_visitor("s1", minutes_ago(5), site_id="other-site"),
            make_page_view("s1", minutes_ago(5)),
        )
        report = await build_report(db_session, SITE, 7, writer, now=NOW)
        assert report["pageViews"] == 1
        assert report["sessions"] == 0
        assert report["bounceRate"] == 0


class TestIdempotence:
    async def test_repeat_calls_agree(self, db_session, seed, writer):
        await seed(
            make_visitor("a", minutes_ago(40)),
            make_visitor("b", minutes_ago(30)),
            make_page_view("a", minutes_ago(40), "/", utm_source="google"),
            make_page_view("a", minutes_ago(35), "/about"),
            make_page_view("b", minutes_ago(30), "/"),
        )
        first = await build_report(db_session, SITE, 30, writer, now=NOW)
        second = await build_report(db_session, SITE, 30, writer, now=NOW)
        for key in ("pageViews", "uniqueVisitors", "sessions", "topPages", "trafficSources"):
            assert first[key] == second[key]
        assert writer.writes == 2


class TestSnapshotSideEffect:
    async def _seed_two_periods(self, seed):
        await seed(
            make_visitor("old", days_ago(10)),
            make_page_view("old", days_ago(10)),
            make_page_view("old", days_ago(10) + timedelta(minutes=2)),
            make_visitor("new", minutes_ago(30)),
            make_page_view("new", minutes_ago(30)),
        )

    async def test_window_mode_stores_window_totals(self, db_session, seed, writer):
        # Compatibility behaviour: the snapshot carries the requested window.
        await self._seed_two_periods(seed)
        await build_report(db_session, SITE, 30, writer, now=NOW)
        row = await get_snapshot(db_session, SITE, TODAY)
        assert row.page_views == 3
        assert row.sessions == 2
        assert row.bounce_rate == 50

    async def test_daily_mode_stores_last_24h(self, db_session, seed, writer, mock_settings):
        mock_settings.snapshot_mode = "daily"
        await self._seed_two_periods(seed)
        report = await build_report(db_session, SITE, 30, writer, now=NOW)
        row = await get_snapshot(db_session, SITE, TODAY)
        assert report["pageViews"] == 3
        assert row.page_views == 1
        assert row.sessions == 1
        assert row.bounce_rate == 100

    async def test_daily_mode_compares_like_with_like(self, db_session, seed, writer, mock_settings):
        mock_settings.snapshot_mode = "daily"
        rows = []
        for n in range(30):
            sid = f"s{n}"
            seen = days_ago(n) - timedelta(hours=1)
            rows += [make_visitor(sid, seen), make_page_view(sid, seen)]
        await seed(*rows, make_snapshot(YESTERDAY, page_views=1, unique_visitors=1, sessions=1, bounce_rate=100))

        report = await build_report(db_session, SITE, 30, writer, now=NOW)
        row = await get_snapshot(db_session, SITE, TODAY)
        assert report["pageViews"] == 30
        assert row.page_views == 1
        assert report["percentageChanges"]["pageViews"] == 0
        assert report["percentageChanges"]["sessions"] == 0
        assert report["percentageChanges"]["bounceRate"] == 0

    async def test_snapshot_does_not_change_todays_report(self, db_session, seed, writer):
        await self._seed_two_periods(seed)
        await build_report(db_session, SITE, 30, writer, now=NOW)
        report = await build_report(db_session, SITE, 30, writer, now=NOW)
        # today's own snapshot is never its baseline
        assert report["percentageChanges"]["pageViews"] is None

    async def test_failed_write_still_returns_report(self, db_session, seed):
        await seed(make_visitor("s1", minutes_ago(5)), make_page_view("s1", minutes_ago(5)))
        failing = MagicMock()
        failing.write = AsyncMock(return_value=False)

        report = await build_report(db_session, SITE, 30, failing, now=NOW)
        assert report["pageViews"] == 1
        failing.write.assert_awaited_once()
        _, site_id, day, values = failing.write.await_args.args
        assert (site_id, day) == (SITE, TODAY)
        assert values["page_views"] == 1
