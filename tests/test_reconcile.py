"""Tests for dedup, enrichment, route linking, similarity and clustering."""

from datetime import timedelta

import pytest

from conftest import T0, boxed_route, hr_series, make_track, make_workout
from runlab.models import Sample, TrackRoute
from runlab.reconcile import (
    cluster_routes,
    compare_routes,
    deduplicate_workouts,
    enrich_workout,
    filter_routes_by_hr,
    find_route_for_workout,
    find_similar_routes,
    heart_rate_at,
    hr_availability,
    is_duplicate,
    link_route_to_workout,
    link_routes,
    merge_workouts,
    route_similarity,
    sort_routes,
    workout_similarity,
)

BOX = [[0.0, 0.0], [0.01, 0.01]]


class TestDuplicateDetection:
    def test_five_minutes_and_fifty_metres_apart(self):
        """A run 5 min later and 50 m longer is the same run."""
        apple = make_workout("apple", T0, 5.0)
        strava = make_workout("strava", T0 + timedelta(minutes=5), 5.05)
        assert is_duplicate(apple, strava)
        assert deduplicate_workouts([apple, strava])[0].id == apple.id
        assert len(deduplicate_workouts([apple, strava])) == 1

    def test_time_gate(self):
        apple = make_workout("apple", T0, 5.0)
        assert workout_similarity(apple, make_workout("strava", T0 + timedelta(minutes=10), 5.0)) is None
        assert workout_similarity(apple, make_workout("strava", T0 - timedelta(minutes=9), 5.0)) is not None

    def test_distance_gate_scales_with_distance(self):
        """Gate is max(0.5 km, 10 % of the larger distance)."""
        assert is_duplicate(make_workout("apple", T0, 20.0), make_workout("strava", T0, 21.5))
        assert not is_duplicate(make_workout("apple", T0, 3.0), make_workout("strava", T0, 3.6))

    def test_score_below_threshold(self):
        """Both gates pass, but the run is far from identical on both axes."""
        apple = make_workout("apple", T0, 5.0)
        strava = make_workout("strava", T0 + timedelta(minutes=8), 4.6)
        assert workout_similarity(apple, strava) == pytest.approx((0.2 + 0.2) / 2)
        assert not is_duplicate(apple, strava)

    def test_farther_apart_never_scores_higher(self):
        apple = make_workout("apple", T0, 5.0)
        scores = [
            workout_similarity(apple, make_workout("strava", T0 + timedelta(minutes=m), 5.1))
            for m in (0, 2, 4, 6, 8)
        ]
        assert scores == sorted(scores, reverse=True)


class TestDeduplicate:
    def test_primaries_always_survive(self):
        a1 = make_workout("apple", T0, 5.0)
        a2 = make_workout("apple", T0 + timedelta(minutes=1), 5.0)
        result = deduplicate_workouts([a1, a2])
        assert [w.id for w in result] == [a1.id, a2.id]

    def test_first_qualifying_primary_wins(self):
        a1 = make_workout("apple", T0, 5.0)
        a2 = make_workout("apple", T0 + timedelta(minutes=2), 5.0)
        s = make_workout("strava", T0 + timedelta(minutes=2), 5.0, hr_avg=150.0)
        result = deduplicate_workouts([a1, a2, s], merge=True)
        assert result[0].merged_from == s.id
        assert result[1].merged_from is None

    def test_unmatched_secondaries_and_other_sources_kept(self):
        apple = make_workout("apple", T0, 5.0)
        strava = make_workout("strava", T0 + timedelta(days=1), 8.0)
        other = make_workout("other", T0, 5.0)
        result = deduplicate_workouts([strava, other, apple])
        assert [w.source for w in result] == ["apple", "strava", "other"]

    def test_idempotent(self):
        workouts = [
            make_workout("apple", T0, 5.0),
            make_workout("strava", T0 + timedelta(minutes=3), 5.1, hr_avg=140.0),
            make_workout("strava", T0 + timedelta(days=2), 10.0),
        ]
        once = deduplicate_workouts(workouts)
        assert deduplicate_workouts(once) == once

    def test_source_roles_are_parameters(self):
        apple = make_workout("apple", T0, 5.0)
        strava = make_workout("strava", T0, 5.0)
        result = deduplicate_workouts([apple, strava], primary="strava", secondary="apple")
        assert [w.source for w in result] == ["strava"]

    def test_merge_disabled_returns_primary_untouched(self):
        apple = make_workout("apple", T0, 5.0)
        strava = make_workout("strava", T0, 5.0, calories=400.0)
        assert deduplicate_workouts([apple, strava], merge=False) == [apple]


class TestMerge:
    def test_fills_missing_fields(self):
        apple = make_workout("apple", T0, 5.0)
        strava = make_workout("strava", T0, 5.0, calories=400.0, elevation_gain_m=42.0,
                              cadence_avg=172.0, hr_avg=150.0, hr_max=171.0)
        merged = merge_workouts(apple, strava)
        assert merged.calories == 400.0
        assert merged.elevation_gain_m == 42.0
        assert merged.cadence_avg == 172.0
        assert merged.hr_avg == 150.0 and merged.hr_max == 171.0
        assert merged.merged_from == strava.id
        assert apple.calories == 0.0

    def test_primary_summary_kept_without_secondary_series(self):
        apple = make_workout("apple", T0, 5.0, hr_avg=150.0, calories=300.0)
        strava = make_workout("strava", T0, 5.0, hr_avg=155.0, calories=400.0)
        merged = merge_workouts(apple, strava)
        assert merged.hr_avg == 150.0
        assert merged.calories == 300.0

    def test_longer_secondary_series_replaces_and_recomputes(self):
        apple = make_workout("apple", T0, 5.0, hr_avg=150.0,
                             heart_rate_data=hr_series(T0, [150, 152]))
        strava = make_workout("strava", T0, 5.0, hr_avg=149.0,
                              heart_rate_data=hr_series(T0, [140, 150, 160, 171]))
        merged = merge_workouts(apple, strava)
        assert len(merged.heart_rate_data) == 4
        assert (merged.hr_avg, merged.hr_min, merged.hr_max) == (155.0, 140.0, 171.0)

    def test_shorter_secondary_series_only_overrides_summary(self):
        apple = make_workout("apple", T0, 5.0, hr_avg=150.0,
                             heart_rate_data=hr_series(T0, [150, 152, 154]))
        strava = make_workout("strava", T0, 5.0, hr_avg=149.0,
                              heart_rate_data=hr_series(T0, [149]))
        merged = merge_workouts(apple, strava)
        assert len(merged.heart_rate_data) == 3
        assert merged.hr_avg == 149.0


class TestEnrich:
    def test_fills_from_other_source(self):
        apple = make_workout("apple", T0, 5.0)
        strava = make_workout("strava", T0 + timedelta(minutes=3), 5.0, hr_avg=148.0,
                              cadence_avg=170.0, heart_rate_data=hr_series(T0, [140, 156]))
        enriched = enrich_workout(apple, [apple, strava])
        assert enriched.hr_avg == 148.0
        assert enriched.cadence_avg == 170.0
        assert len(enriched.heart_rate_data) == 2
        assert enriched.hr_min == 140.0 and enriched.hr_max == 156.0
        assert apple.hr_avg is None

    def test_ignores_same_source_and_far_workouts(self):
        apple = make_workout("apple", T0, 5.0)
        near_same = make_workout("apple", T0 + timedelta(minutes=1), 5.0, hr_avg=150.0)
        far = make_workout("strava", T0 + timedelta(minutes=15), 5.0, hr_avg=150.0)
        assert enrich_workout(apple, [near_same, far]).hr_avg is None

    def test_route_supplies_elevation_and_hr(self):
        apple = make_workout("apple", T0, 5.0)
        route = make_track(start=T0 + timedelta(minutes=2), n=5, hr=151.0)
        enriched = enrich_workout(apple, routes=[route])
        assert enriched.elevation_gain_m == 4.0
        assert [s.value for s in enriched.heart_rate_data] == [151.0] * 5
        assert enriched.hr_avg == 151.0

    def test_nothing_to_enrich(self):
        apple = make_workout("apple", T0, 5.0)
        assert enrich_workout(apple) == apple

    def test_route_lookup_picks_closest(self):
        w = make_workout("apple", T0, 5.0)
        far = make_track("far.gpx", start=T0 + timedelta(minutes=4))
        near = make_track("near.gpx", start=T0 - timedelta(minutes=1))
        assert find_route_for_workout(w, [far, near]).filename == "near.gpx"
        assert find_route_for_workout(w, [make_track(start=T0 + timedelta(minutes=5))]) is None


class TestLinking:
    def test_link_copies_hr_without_mutating(self):
        route = make_track(start=T0 + timedelta(minutes=1))
        workout = make_workout("apple", T0, 5.0, hr_avg=150.0, hr_min=120.0, hr_max=170.0,
                               heart_rate_data=hr_series(T0, [140, 150, 160]))
        linked, match = link_route_to_workout(route, [workout])
        assert match is workout
        assert linked.linked_workout_id == workout.id
        assert (linked.hr_avg, linked.hr_min, linked.hr_max) == (150.0, 120.0, 170.0)
        assert len(linked.heart_rate_data) == 3
        assert route.linked_workout_id is None
        assert route.heart_rate_data == []

    def test_no_match_returns_route_unchanged(self):
        route = make_track(start=T0 + timedelta(minutes=6))
        linked, match = link_route_to_workout(route, [make_workout("apple", T0, 5.0)])
        assert match is None
        assert linked is route

    def test_closest_workout_wins(self):
        route = make_track(start=T0)
        w_far = make_workout("apple", T0 + timedelta(minutes=4), 5.0, id="far")
        w_near = make_workout("strava", T0 - timedelta(minutes=2), 5.0, id="near")
        _, match = link_route_to_workout(route, [w_far, w_near])
        assert match.id == "near"

    def test_relinking_is_stable(self):
        workouts = [make_workout("apple", T0, 5.0, hr_avg=150.0)]
        routes = [make_track("a.gpx", start=T0), make_track("b.gpx", start=T0 + timedelta(hours=3))]
        once = link_routes(routes, workouts)
        assert link_routes(once, workouts) == once
        assert [r.linked_workout_id for r in once] == [workouts[0].id, None]

    def test_route_without_start(self):
        route = TrackRoute(filename="x.gpx", name="x")
        assert link_route_to_workout(route, [make_workout()]) == (route, None)


class TestHeartRateAt:
    def test_nearest_sample(self):
        route = TrackRoute(filename="r.gpx", name="r", start_time=T0, hr_avg=150.0,
                           heart_rate_data=hr_series(T0, [130, 140, 150]))
        assert heart_rate_at(route, 0) == 130.0
        assert heart_rate_at(route, 50_000) == 140.0
        assert heart_rate_at(route, 95_000) == 150.0
        assert heart_rate_at(route, 10_000_000) == 150.0

    def test_falls_back_to_average(self):
        route = TrackRoute(filename="r.gpx", name="r", start_time=T0, hr_avg=147.0)
        assert heart_rate_at(route, 1000) == 147.0
        assert heart_rate_at(TrackRoute(filename="r.gpx", name="r"), 0) is None


class TestRouteSimilarity:
    def test_identical_routes(self):
        a = boxed_route("a.gpx", BOX, 5.0, (0.005, 0.005))
        b = boxed_route("b.gpx", BOX, 5.0, (0.005, 0.005))
        assert route_similarity(a, b) == pytest.approx(1.0)

    def test_symmetric_and_bounded(self):
        a = boxed_route("a.gpx", BOX, 5.0, (0.005, 0.005))
        b = boxed_route("b.gpx", [[0.002, 0.0], [0.012, 0.01]], 4.0, (0.007, 0.005))
        s = route_similarity(a, b)
        assert 0.0 <= s <= 1.0
        assert s == pytest.approx(route_similarity(b, a))

    def test_far_centres_score_zero(self):
        a = boxed_route("a.gpx", BOX, 5.0, (0.005, 0.005))
        b = boxed_route("b.gpx", BOX, 5.0, (0.05, 0.005))
        assert route_similarity(a, b) == 0.0

    def test_zero_length_routes(self):
        a = boxed_route("a.gpx", BOX, 0.0, (0.005, 0.005))
        assert route_similarity(a, boxed_route("b.gpx", BOX, 0.0, (0.005, 0.005))) == pytest.approx(1.0)

    def test_find_similar_excludes_target_and_sorts(self):
        target = boxed_route("t.gpx", BOX, 5.0, (0.005, 0.005))
        twin = boxed_route("twin.gpx", BOX, 5.0, (0.005, 0.005))
        cousin = boxed_route("cousin.gpx", BOX, 3.0, (0.006, 0.005))
        stranger = boxed_route("far.gpx", BOX, 5.0, (1.0, 1.0))
        result = find_similar_routes(target, [stranger, cousin, target, twin])
        assert [r.filename for r, _ in result] == ["twin.gpx", "cousin.gpx"]
        assert result[0][1] >= result[1][1]


class TestClustering:
    def test_every_route_in_exactly_one_cluster(self):
        routes = [
            boxed_route("home1.gpx", BOX, 5.0, (32.70, -97.10), T0),
            boxed_route("home2.gpx", BOX, 5.0, (32.71, -97.10), T0 + timedelta(days=1)),
            boxed_route("trip.gpx", BOX, 5.0, (40.00, -74.00), T0),
            TrackRoute(filename="nogps.gpx", name="nogps"),
        ]
        clusters = cluster_routes(routes)
        members = [r.filename for c in clusters for r in c.routes]
        assert sorted(members) == sorted(r.filename for r in routes)
        assert len(members) == len(set(members))

    def test_largest_first_and_newest_first(self):
        routes = [
            boxed_route("trip.gpx", BOX, 5.0, (40.00, -74.00), T0),
            boxed_route("old.gpx", BOX, 5.0, (32.70, -97.10), T0),
            boxed_route("new.gpx", BOX, 6.0, (32.71, -97.10), T0 + timedelta(days=1)),
        ]
        clusters = cluster_routes(routes)
        assert [len(c.routes) for c in clusters] == [2, 1]
        assert [r.filename for r in clusters[0].routes] == ["new.gpx", "old.gpx"]
        assert clusters[0].name == "Area 32.70°N, 97.10°W"
        assert clusters[0].total_distance_km == 11.0

    def test_unlocated_routes(self):
        clusters = cluster_routes([TrackRoute(filename="x.gpx", name="x")])
        assert clusters[0].name == "Unknown area"
        assert clusters[0].center is None

    def test_empty(self):
        assert cluster_routes([]) == []


class TestRouteLists:
    def _routes(self):
        detailed = TrackRoute(filename="d.gpx", name="d", heart_rate_data=[Sample(T0, 150.0)],
                              hr_avg=150.0, total_distance_km=10.0, duration_min=50.0,
                              avg_pace=5.0, start_time=T0)
        avg_only = TrackRoute(filename="a.gpx", name="a", hr_avg=140.0, total_distance_km=5.0,
                              duration_min=30.0, avg_pace=6.0, start_time=T0 + timedelta(days=1))
        bare = TrackRoute(filename="n.gpx", name="n", total_distance_km=8.0, duration_min=36.0,
                          avg_pace=4.5, start_time=T0 - timedelta(days=1))
        return [detailed, avg_only, bare]

    def test_hr_availability(self):
        assert [hr_availability(r) for r in self._routes()] == ["detailed", "avg_only", "none"]

    def test_filter(self):
        routes = self._routes()
        assert filter_routes_by_hr(routes, "all") == routes
        assert [r.filename for r in filter_routes_by_hr(routes, "detailed")] == ["d.gpx"]
        assert [r.filename for r in filter_routes_by_hr(routes, "none")] == ["n.gpx"]
        with pytest.raises(ValueError):
            filter_routes_by_hr(routes, "some")

    def test_sort(self):
        routes = self._routes()
        assert [r.filename for r in sort_routes(routes)] == ["a.gpx", "d.gpx", "n.gpx"]
        assert [r.filename for r in sort_routes(routes, "distance")] == ["d.gpx", "n.gpx", "a.gpx"]
        assert [r.filename for r in sort_routes(routes, "pace", ascending=True)] == ["n.gpx", "d.gpx", "a.gpx"]
        with pytest.raises(ValueError):
            sort_routes(routes, "colour")

    def test_compare(self):
        d, a, _ = self._routes()
        result = compare_routes(d, a)
        assert result["distance_diff_km"] == 5.0
        assert result["duration_diff_min"] == 20.0
        assert result["pace_diff"] == -1.0
        assert result["route1"]["name"] == "d"
        assert result["similarity"] == 0.0
