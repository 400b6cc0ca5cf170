"""
Tests for filter token parsing and the AND/OR combination rules.
"""

import itertools

import pytest

from api.enums import FilterKind, FilterMode
from api.filters import (
    FilterSelection,
    FilterToken,
    filter_by_level,
    filter_videos,
    matches_filter_tokens,
    matches_filters,
    matches_search,
    parse_filter_token,
    within_level,
)
from api.models import Category, Curriculum, Performer


def titles(videos):
    return [v.title for v in videos]


class TestParseFilterToken:
    """Tests for the prefixed wire form."""

    def test_bare_id_is_category(self):
        """Test that a bare id parses as a category token."""
        assert parse_filter_token("cat-kata") == FilterToken(FilterKind.CATEGORY, "cat-kata")

    @pytest.mark.parametrize(
        "raw,kind,value",
        [
            ("curriculum:cur-white", FilterKind.CURRICULUM, "cur-white"),
            ("performer:perf-ito", FilterKind.PERFORMER, "perf-ito"),
            ("recorded:Spring 2023", FilterKind.RECORDED, "Spring 2023"),
            ("views:10", FilterKind.VIEWS, "10"),
            ("category:cat-kata", FilterKind.CATEGORY, "cat-kata"),
        ],
    )
    def test_prefixed_tokens(self, raw, kind, value):
        """Test that each prefix maps to its kind."""
        token = parse_filter_token(raw)
        assert token.kind == kind
        assert token.value == value

    @pytest.mark.parametrize("raw", ["", "   ", "curriculum:", "views:", "category:"])
    def test_empty_tokens_are_rejected(self, raw):
        """Test that empty input and prefixes without a value parse to None."""
        assert parse_filter_token(raw) is None

    def test_non_string_is_rejected(self):
        """Test that non-string values parse to None."""
        assert parse_filter_token(42) is None

    def test_wire_form_of_category_has_no_prefix(self):
        """Test that categories are written back as bare ids."""
        assert parse_filter_token("category:cat-kata").to_wire() == "cat-kata"
        assert FilterToken.views(50).to_wire() == "views:50"


class TestFilterSelection:
    """Tests for the selection value object."""

    def test_from_wire_dedups_and_skips_empty(self):
        """Test that duplicates and empty tokens are dropped, order kept."""
        selection = FilterSelection.from_wire(["cat-kata", "", "performer:perf-ito", "cat-kata"])
        assert selection.to_wire() == ["cat-kata", "performer:perf-ito"]

    def test_toggle_adds_then_removes(self):
        """Test that toggling the same token twice restores the selection."""
        token = FilterToken.curriculum("cur-green")
        selection = FilterSelection().toggle(token)
        assert token in selection
        assert len(selection) == 1
        assert selection.toggle(token).is_empty

    def test_values_by_kind(self):
        """Test grouping of token values by kind."""
        selection = FilterSelection.from_wire(["cat-kata", "curriculum:cur-white", "cat-weapons"])
        assert selection.values(FilterKind.CATEGORY) == ["cat-kata", "cat-weapons"]
        assert selection.values(FilterKind.CURRICULUM) == ["cur-white"]
        assert selection.values(FilterKind.PERFORMER) == []

    def test_mode_accepts_string(self):
        """Test that the mode is coerced to the enum."""
        selection = FilterSelection.from_wire(["cat-kata"], "OR")
        assert selection.mode == FilterMode.OR
        assert selection.with_mode("AND").mode == FilterMode.AND

    def test_cleared_keeps_mode(self):
        """Test that clearing drops tokens but keeps the mode."""
        selection = FilterSelection.from_wire(["cat-kata"], FilterMode.OR).cleared()
        assert selection.is_empty
        assert selection.mode == FilterMode.OR

    def test_from_groups(self):
        """Test the two-list form."""
        selection = FilterSelection.from_groups(["cat-kata"], ["cur-green"], FilterMode.OR)
        assert selection.to_wire() == ["cat-kata", "curriculum:cur-green"]


class TestMatchesSearch:
    """Tests for free-text search."""

    def test_empty_query_matches(self, make_video):
        """Test that empty and whitespace queries match everything."""
        video = make_video(title="Anything")
        assert matches_search(video, None)
        assert matches_search(video, "")
        assert matches_search(video, "   ")

    def test_title_is_case_insensitive(self, make_video):
        """Test that title matching ignores case."""
        assert matches_search(make_video(title="Basic Blocks"), "BLOCKS")

    def test_description_and_facet_names(self, make_video):
        """Test that description and facet names are searched."""
        video = make_video(
            title="Untitled",
            description="Low stance drills",
            categories=(Category("c1", "Kata"),),
            curriculums=(Curriculum("cu1", "Green Belt", 3),),
            performers=(Performer("p1", "Sensei Ito"),),
        )
        assert matches_search(video, "stance")
        assert matches_search(video, "kata")
        assert matches_search(video, "green")
        assert matches_search(video, "ito")
        assert not matches_search(video, "sparring")

    def test_search_over_sample_catalog(self, catalog_snapshot):
        """Test that a performer name finds every video they appear in."""
        found = filter_videos(catalog_snapshot.videos, FilterSelection(), "ito")
        assert titles(found) == ["Basic Blocks", "Sparring Drills", "Bo Staff Forms"]


class TestMatchesFilters:
    """Tests for the unified AND/OR rule."""

    def test_empty_selection_matches_all(self, catalog_snapshot):
        """Test that no filters match every video in both modes."""
        for mode in FilterMode:
            found = filter_videos(catalog_snapshot.videos, FilterSelection(mode=mode))
            assert len(found) == len(catalog_snapshot.videos)

    def test_and_within_kind(self, catalog_snapshot):
        """Test that AND needs every selected category."""
        selection = FilterSelection.from_wire(["cat-kata", "cat-weapons"], FilterMode.AND)
        assert titles(filter_videos(catalog_snapshot.videos, selection)) == ["Advanced Kata"]

    def test_or_within_kind(self, catalog_snapshot):
        """Test that OR needs any selected category."""
        selection = FilterSelection.from_wire(["cat-kata", "cat-weapons"], FilterMode.OR)
        assert titles(filter_videos(catalog_snapshot.videos, selection)) == [
            "Basic Blocks",
            "Advanced Kata",
            "Bo Staff Forms",
        ]

    def test_and_across_kinds(self, catalog_snapshot):
        """Test that AND joins kinds with logical AND."""
        selection = FilterSelection.from_wire(["cat-kata", "curriculum:cur-green"], FilterMode.AND)
        assert titles(filter_videos(catalog_snapshot.videos, selection)) == ["Advanced Kata"]

    def test_or_across_kinds(self, catalog_snapshot):
        """Test that OR joins kinds with logical OR."""
        selection = FilterSelection.from_wire(["cat-kata", "curriculum:cur-yellow"], FilterMode.OR)
        assert titles(filter_videos(catalog_snapshot.videos, selection)) == [
            "Basic Blocks",
            "Advanced Kata",
            "Sparring Drills",
        ]

    def test_performer_filter(self, catalog_snapshot):
        """Test performer tokens."""
        selection = FilterSelection.from_wire(["performer:perf-ito", "performer:perf-mia"], FilterMode.AND)
        assert titles(filter_videos(catalog_snapshot.videos, selection)) == ["Sparring Drills"]

    def test_recorded_filter_ignores_unset(self, catalog_snapshot):
        """Test that the Unset placeholder is never matched as a label."""
        selection = FilterSelection.from_wire(["recorded:Unset"])
        assert filter_videos(catalog_snapshot.videos, selection) == []
        selection = FilterSelection.from_wire(["recorded:Spring 2023"])
        assert titles(filter_videos(catalog_snapshot.videos, selection)) == ["Basic Blocks"]

    def test_recorded_and_over_two_labels_is_empty(self, catalog_snapshot):
        """Test that a video cannot carry two recorded labels at once."""
        selection = FilterSelection.from_wire(["recorded:Spring 2023", "recorded:Summer 2023"], FilterMode.AND)
        assert filter_videos(catalog_snapshot.videos, selection) == []
        selection = selection.with_mode(FilterMode.OR)
        assert len(filter_videos(catalog_snapshot.videos, selection)) == 2

    def test_view_bucket_is_threshold(self, catalog_snapshot):
        """Test that views:n matches videos with at least n views."""
        assert titles(filter_videos(catalog_snapshot.videos, FilterSelection.from_wire(["views:2"]))) == [
            "Sparring Drills"
        ]
        assert titles(filter_videos(catalog_snapshot.videos, FilterSelection.from_wire(["views:1"]))) == [
            "Basic Blocks",
            "Sparring Drills",
        ]

    def test_malformed_view_bucket_never_matches(self, make_video):
        """Test that a non-numeric bucket matches nothing."""
        video = make_video(views=100)
        assert not matches_filters(video, FilterSelection.from_wire(["views:lots"]))

    def test_unknown_category_matches_nothing(self, catalog_snapshot):
        """Test that unknown ids simply match no video."""
        assert filter_videos(catalog_snapshot.videos, FilterSelection.from_wire(["cat-missing"])) == []

    def test_search_and_filters_combine(self, catalog_snapshot):
        """Test that search narrows the filtered set."""
        selection = FilterSelection.from_wire(["cat-kata"])
        assert titles(filter_videos(catalog_snapshot.videos, selection, "advanced")) == ["Advanced Kata"]

    def test_matches_filter_tokens(self, catalog_snapshot):
        """Test the two-list helper against the same rule."""
        by_id = {v.id: v for v in catalog_snapshot.videos}
        assert matches_filter_tokens(by_id["vid-kata"], ["cat-kata"], ["cur-green"], FilterMode.AND)
        assert not matches_filter_tokens(by_id["vid-blocks"], ["cat-kata"], ["cur-green"], FilterMode.AND)
        assert matches_filter_tokens(by_id["vid-blocks"], ["cat-kata"], ["cur-green"], FilterMode.OR)

    def test_and_results_are_subset_of_or(self, catalog_snapshot):
        """Test that AND never matches a video OR rejects, for any non-empty selection."""
        pool = [
            "cat-kata",
            "cat-weapons",
            "cat-missing",
            "curriculum:cur-white",
            "curriculum:cur-green",
            "performer:perf-ito",
            "performer:perf-mia",
            "recorded:Spring 2023",
            "recorded:Summer 2023",
            "views:1",
            "views:2",
        ]
        for size in (1, 2, 3):
            for tokens in itertools.combinations(pool, size):
                selection = FilterSelection.from_wire(list(tokens))
                and_ids = {v.id for v in filter_videos(catalog_snapshot.videos, selection.with_mode(FilterMode.AND))}
                or_ids = {v.id for v in filter_videos(catalog_snapshot.videos, selection.with_mode(FilterMode.OR))}
                assert and_ids <= or_ids, tokens


class TestCombinedSelections:
    """Small catalogs exercising categories and curriculums together."""

    @pytest.fixture
    def three_videos(self, make_video):
        kata = Category("cat-kata", "Kata")
        kumite = Category("cat-kumite", "Kumite")
        white = Curriculum("cur-white", "White Belt", 1)
        orange = Curriculum("cur-orange", "Orange Belt", 3)
        return [
            make_video("v1", "Kata Basics", categories=(kata,), curriculums=(white,)),
            make_video("v2", "Kumite Rounds", categories=(kumite,), curriculums=(orange,)),
            make_video("v3", "Kata Into Kumite", categories=(kata, kumite), curriculums=(white,)),
        ]

    def test_two_categories_with_and(self, three_videos):
        """Test that only the video in both categories matches."""
        selection = FilterSelection.from_wire(["cat-kata", "cat-kumite"], FilterMode.AND)
        assert [v.id for v in filter_videos(three_videos, selection)] == ["v3"]

    def test_curriculum_and_category_with_and(self, three_videos):
        """Test a belt and a category selected together."""
        selection = FilterSelection.from_wire(["curriculum:cur-white", "cat-kata"], FilterMode.AND)
        assert [v.id for v in filter_videos(three_videos, selection)] == ["v1", "v3"]

    def test_apostrophes_in_search(self, make_video):
        """Test that quotes in the query are matched literally."""
        videos = [
            make_video("v1", "O'Sensei's Favourite Kata"),
            make_video("v2", "Kumite Rounds"),
        ]
        assert [v.id for v in filter_videos(videos, FilterSelection(), "o'sensei's")] == ["v1"]
        assert filter_videos(videos, FilterSelection(), "nunchaku") == []


class TestLevelBound:
    """Tests for the curriculum level cap."""

    def test_no_bound_keeps_everything(self, catalog_snapshot):
        """Test that a missing bound keeps every video."""
        assert len(filter_by_level(catalog_snapshot.videos, None)) == len(catalog_snapshot.videos)

    def test_bound_hides_higher_levels(self, catalog_snapshot):
        """Test that videos ranked above the bound are hidden, general videos stay."""
        visible = filter_by_level(catalog_snapshot.videos, 2)
        assert titles(visible) == ["Basic Blocks", "Sparring Drills", "Warmup Routine"]

    def test_any_curriculum_within_bound(self, make_video):
        """Test that one qualifying curriculum is enough."""
        video = make_video(curriculums=(Curriculum("a", "White", 1), Curriculum("b", "Black", 10)))
        assert within_level(video, 1)
        assert not within_level(make_video(curriculums=(Curriculum("b", "Black", 10),)), 1)

    def test_video_without_curriculum_is_visible(self, make_video):
        """Test that general content is visible at any bound."""
        assert within_level(make_video(), 0)
