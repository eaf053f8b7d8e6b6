"""Tests for journey tracking, conversion finalization and attribution reporting."""

from datetime import timedelta

import pytest
from fastapi import HTTPException

from app.core.clock import utcnow
from app.models.schemas.attribution import TouchpointData
from app.repositories.journey_repo import JourneyChangedError
from app.services.attribution_service import AttributionService, resolve_channel
from app.services.attribution_weights import AttributionModel

from conftest import make_touchpoint


@pytest.fixture()
def service(db):
    return AttributionService(db, half_life_days=7)


@pytest.fixture()
def other_service(session_factory):
    """A second request working on the same database."""
    session = session_factory()
    yield AttributionService(session, half_life_days=7)
    session.close()


def track_all(service, user_id, *touchpoints, session_id="s1"):
    return [service.track_touchpoint(user_id, session_id, tp) for tp in touchpoints]


class TestTrackTouchpoint:
    def test_opens_journey_and_orders_touchpoints(self, service):
        first, second = track_all(service, "u1", make_touchpoint("google"), make_touchpoint("meta"))

        assert first.journey_id == second.journey_id
        assert (first.order, second.order) == (1, 2)
        assert first.attribution_weight is None

    def test_users_have_separate_journeys(self, service):
        (a,) = track_all(service, "u1", make_touchpoint("google"))
        (b,) = track_all(service, "u2", make_touchpoint("google"))

        assert a.journey_id != b.journey_id
        assert b.order == 1

    def test_stores_touchpoint_fields(self, service):
        (tp,) = track_all(
            service,
            "u1",
            make_touchpoint("google", source="google", medium="cpc", campaign="fall", click_id="abc", click_id_type="gclid"),
        )

        assert (tp.channel, tp.medium, tp.campaign, tp.click_id_type) == ("google", "cpc", "fall", "gclid")

    def test_touchpoint_after_conversion_opens_new_journey(self, service):
        (before,) = track_all(service, "u1", make_touchpoint("google"))
        service.record_conversion("u1", 10.0, AttributionModel.LAST_TOUCH)
        (after,) = track_all(service, "u1", make_touchpoint("meta"))

        assert after.journey_id != before.journey_id
        assert after.order == 1

    def test_journey_converted_before_append_gets_new_journey(self, service, other_service, monkeypatch):
        (first,) = track_all(service, "u1", make_touchpoint("google"))
        first_journey_id = first.journey_id
        read_open_journey = service.journey_repo.get_open_journey
        reads = []

        def read_then_convert_elsewhere(user_id):
            journey = read_open_journey(user_id)
            if not reads:
                other_service.record_conversion(user_id, 10.0, AttributionModel.LAST_TOUCH)
            reads.append(user_id)
            return journey

        monkeypatch.setattr(service.journey_repo, "get_open_journey", read_then_convert_elsewhere)
        tp = service.track_touchpoint("u1", "s1", make_touchpoint("meta"))

        assert tp.journey_id != first_journey_id
        assert tp.order == 1
        converted = service.get_journey_attribution(first_journey_id)
        assert [t.channel for t in converted.touchpoints] == ["google"]
        assert converted.touchpoints[0].weight == 1.0

    def test_infers_channel_from_click_id(self, service):
        (tp,) = track_all(service, "u1", TouchpointData(gclid="gc-123", source="newsletter"))

        assert (tp.channel, tp.click_id, tp.click_id_type) == ("google", "gc-123", "gclid")

    def test_explicit_channel_is_kept(self, service):
        (tp,) = track_all(service, "u1", TouchpointData(channel="email", fbc="fb.1.abc"))

        assert (tp.channel, tp.click_id, tp.click_id_type) == ("email", "fb.1.abc", "fbc")


class TestResolveChannel:
    @pytest.mark.parametrize(
        "fields, expected",
        [
            ({"gclid": "g1"}, ("google", "g1", "gclid")),
            ({"fbc": "c1"}, ("meta", "c1", "fbc")),
            ({"fbp": "p1"}, ("meta", "p1", "fbp")),
            ({"fbc": "c1", "fbp": "p1"}, ("meta", "c1", "fbc")),
            ({"ttclid": "t1"}, ("tiktok", "t1", "ttclid")),
            ({"gclid": "g1", "ttclid": "t1"}, ("google", "g1", "gclid")),
            ({"source": "Newsletter"}, ("newsletter", None, None)),
            ({}, ("direct", None, None)),
        ],
    )
    def test_inference(self, fields, expected):
        resolved = resolve_channel(TouchpointData(**fields))

        assert (resolved.channel, resolved.click_id, resolved.click_id_type) == expected

    def test_caller_values_win(self):
        data = TouchpointData(channel="partner", click_id="own", click_id_type="custom", ttclid="t1")

        assert resolve_channel(data) is data


class TestRecordConversion:
    def test_linear_credit(self, service):
        track_all(service, "u1", make_touchpoint("google", 3), make_touchpoint("meta", 2), make_touchpoint("direct", 1))

        result = service.record_conversion("u1", 90.0, AttributionModel.LINEAR)

        assert result.model is AttributionModel.LINEAR
        assert result.total_value == 90.0
        assert [tp.channel for tp in result.touchpoints] == ["google", "meta", "direct"]
        assert [tp.credited_value for tp in result.touchpoints] == pytest.approx([30.0, 30.0, 30.0])

    def test_weights_are_persisted(self, service):
        (tp1, tp2) = track_all(service, "u1", make_touchpoint("google"), make_touchpoint("meta"))
        journey_id = tp1.journey_id

        service.record_conversion("u1", 50.0, AttributionModel.FIRST_TOUCH)

        view = service.get_journey_attribution(journey_id)
        assert view.model == "first_touch"
        assert view.conversion_value == 50.0
        assert view.converted_at is not None
        assert [tp.weight for tp in view.touchpoints] == [1.0, 0.0]
        assert [tp.credited_value for tp in view.touchpoints] == [50.0, 0.0]

    def test_scenario_b_time_decay(self, service):
        track_all(
            service,
            "u1",
            make_touchpoint("google", 10),
            make_touchpoint("meta", 5),
            make_touchpoint("direct", 0),
        )

        result = service.record_conversion("u1", 100.0, AttributionModel.TIME_DECAY)

        weights = [tp.weight for tp in result.touchpoints]
        assert weights[0] < weights[1] < weights[2]
        assert sum(weights) == pytest.approx(1.0, abs=1e-9)

    def test_unknown_model_name_uses_last_touch(self, service):
        track_all(service, "u1", make_touchpoint("google"), make_touchpoint("meta"))

        result = service.record_conversion("u1", 10.0, "lineaar")

        assert result.model is AttributionModel.LAST_TOUCH
        assert [tp.weight for tp in result.touchpoints] == [0.0, 1.0]

    def test_no_journey_returns_none(self, service):
        assert service.record_conversion("nobody", 10.0, AttributionModel.LINEAR) is None

    def test_scenario_c_empty_journey(self, service):
        journey = service.journey_repo.create_journey("u1", "s1")

        assert service.record_conversion("u1", 10.0, AttributionModel.LINEAR) is None

        still_open = service.journey_repo.get_open_journey("u1")
        assert still_open.journey_id == journey.journey_id
        assert still_open.converted_at is None

    def test_second_conversion_returns_none(self, service):
        (tp1, _) = track_all(service, "u1", make_touchpoint("google"), make_touchpoint("meta"))
        service.record_conversion("u1", 20.0, AttributionModel.LINEAR)

        assert service.record_conversion("u1", 99.0, AttributionModel.FIRST_TOUCH) is None

        view = service.get_journey_attribution(tp1.journey_id)
        assert view.conversion_value == 20.0
        assert [tp.weight for tp in view.touchpoints] == pytest.approx([0.5, 0.5])

    def test_concurrently_converted_journey_returns_none(self, service, monkeypatch):
        (tp1,) = track_all(service, "u1", make_touchpoint("google"))
        stale = service.journey_repo.get_open_journey("u1")
        service.record_conversion("u1", 20.0, AttributionModel.LINEAR)

        # Simulate a request that read the journey before the other one committed
        monkeypatch.setattr(service.journey_repo, "get_open_journey", lambda user_id: stale)

        assert service.record_conversion("u1", 99.0, AttributionModel.FIRST_TOUCH) is None
        view = service.get_journey_attribution(tp1.journey_id)
        assert view.conversion_value == 20.0
        assert view.model == "linear"

    def test_failed_finalization_leaves_journey_open(self, service, monkeypatch):
        track_all(service, "u1", make_touchpoint("google"), make_touchpoint("meta"))

        def fail(*args, **kwargs):
            raise RuntimeError("connection dropped")

        monkeypatch.setattr(service.journey_repo, "_mark_converted", fail)
        with pytest.raises(RuntimeError):
            service.record_conversion("u1", 10.0, AttributionModel.LINEAR)
        monkeypatch.undo()

        journey = service.journey_repo.get_open_journey("u1")
        assert journey.converted_at is None
        assert all(tp.attribution_weight is None for tp in journey.touchpoints)

        # Retrying succeeds
        assert service.record_conversion("u1", 10.0, AttributionModel.LINEAR) is not None

    def test_touchpoint_added_during_conversion_is_credited(self, service, other_service, monkeypatch):
        track_all(service, "u1", make_touchpoint("google"), make_touchpoint("meta"))
        compute_weights = service._weights
        seen = []

        def weights_then_track_elsewhere(touchpoints, model):
            if not seen:
                other_service.track_touchpoint("u1", "s1", make_touchpoint("email"))
            seen.append(len(touchpoints))
            return compute_weights(touchpoints, model)

        monkeypatch.setattr(service, "_weights", weights_then_track_elsewhere)
        result = service.record_conversion("u1", 90.0, AttributionModel.LINEAR)

        assert seen == [2, 3]
        assert [tp.channel for tp in result.touchpoints] == ["google", "meta", "email"]
        assert [tp.credited_value for tp in result.touchpoints] == pytest.approx([30.0, 30.0, 30.0])

        view = service.get_journey_attribution(result.journey_id)
        assert view.converted_at is not None
        assert all(tp.weight is not None for tp in view.touchpoints)
        assert sum(tp.weight for tp in view.touchpoints) == pytest.approx(1.0)

    def test_journey_that_keeps_changing_is_left_open(self, service, monkeypatch):
        track_all(service, "u1", make_touchpoint("google"))

        def always_changed(journey, *args, **kwargs):
            raise JourneyChangedError(journey.journey_id)

        monkeypatch.setattr(service.journey_repo, "finalize_conversion", always_changed)
        with pytest.raises(JourneyChangedError):
            service.record_conversion("u1", 10.0, AttributionModel.LINEAR)
        monkeypatch.undo()

        assert service.journey_repo.get_open_journey("u1") is not None


class TestReporting:
    def test_journey_attribution_missing(self, service):
        with pytest.raises(HTTPException) as exc:
            service.get_journey_attribution("missing")
        assert exc.value.status_code == 404

    def test_open_journey_view(self, service):
        (tp,) = track_all(service, "u1", make_touchpoint("google"))

        view = service.get_journey_attribution(tp.journey_id)

        assert view.converted_at is None
        assert view.touchpoints[0].weight is None
        assert view.touchpoints[0].credited_value == 0.0

    def test_compare_models(self, service):
        (tp1, _, _) = track_all(
            service, "u1", make_touchpoint("google", 4), make_touchpoint("email", 2), make_touchpoint("direct", 0)
        )
        service.record_conversion("u1", 60.0, AttributionModel.LAST_TOUCH)

        comparison = service.compare_models(tp1.journey_id)

        assert set(comparison) == {m.value for m in AttributionModel}
        assert [tp.weight for tp in comparison["first_touch"].touchpoints] == [1.0, 0.0, 0.0]
        assert [tp.credited_value for tp in comparison["linear"].touchpoints] == pytest.approx([20.0] * 3)
        for result in comparison.values():
            assert sum(tp.weight for tp in result.touchpoints) == pytest.approx(1.0, abs=1e-9)

        # Comparison does not overwrite what was stored
        view = service.get_journey_attribution(tp1.journey_id)
        assert [tp.weight for tp in view.touchpoints] == [0.0, 0.0, 1.0]

    def test_compare_models_requires_conversion(self, service):
        (tp,) = track_all(service, "u1", make_touchpoint("google"))

        with pytest.raises(HTTPException) as exc:
            service.compare_models(tp.journey_id)
        assert exc.value.status_code == 409

    def test_channel_summary(self, service):
        track_all(service, "u1", make_touchpoint("Google"), make_touchpoint("meta"))
        service.record_conversion("u1", 100.0, AttributionModel.LINEAR)
        track_all(service, "u2", make_touchpoint("google"))
        service.record_conversion("u2", 50.0, AttributionModel.LAST_TOUCH)
        # Open journeys are not counted
        track_all(service, "u3", make_touchpoint("google"))

        now = utcnow()
        summary = {
            row.channel: row
            for row in service.get_channel_attribution_summary(now - timedelta(days=1), now + timedelta(days=1))
        }

        assert set(summary) == {"google", "meta"}
        assert summary["google"].touchpoints == 2
        assert summary["google"].value == pytest.approx(100.0)
        assert summary["google"].conversions == pytest.approx(1.5)
        assert summary["meta"].value == pytest.approx(50.0)

    def test_channel_summary_model_filter(self, service):
        track_all(service, "u1", make_touchpoint("google"), make_touchpoint("meta"))
        service.record_conversion("u1", 100.0, AttributionModel.LINEAR)
        track_all(service, "u2", make_touchpoint("email"))
        service.record_conversion("u2", 50.0, AttributionModel.LAST_TOUCH)

        now = utcnow()
        summary = service.get_channel_attribution_summary(
            now - timedelta(days=1), now + timedelta(days=1), AttributionModel.LAST_TOUCH
        )

        assert [(row.channel, row.value) for row in summary] == [("email", 50.0)]

    def test_channel_summary_outside_range(self, service):
        track_all(service, "u1", make_touchpoint("google"))
        service.record_conversion("u1", 100.0, AttributionModel.LINEAR)

        now = utcnow()
        assert service.get_channel_attribution_summary(now - timedelta(days=10), now - timedelta(days=5)) == []
