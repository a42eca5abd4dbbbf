"""Tests for naming.py — metric labels, alias patterns and group-key composition."""

import pytest


def _labels(make_query, metric, **query_overrides):
    from models import MetricAggSpec
    from naming import expand_metric
    query = make_query(**query_overrides)
    return expand_metric(MetricAggSpec.model_validate(metric), query)


class TestMetricLabels:
    def test_count(self, make_query):
        labels = _labels(make_query, {"type": "count", "id": "1", "field": "ignored"})
        assert [l.text for l in labels] == ["Count"]

    @pytest.mark.parametrize("metric_type,expected", [
        ("avg", "Average @value"),
        ("sum", "Sum @value"),
        ("max", "Max @value"),
        ("min", "Min @value"),
        ("cardinality", "Unique Count @value"),
        ("weighted_avg", "weighted_avg @value"),
    ])
    def test_single_value_metrics(self, make_query, metric_type, expected):
        labels = _labels(make_query, {"type": metric_type, "id": "1", "field": "@value"})
        assert [l.text for l in labels] == [expected]

    def test_avg_without_field(self, make_query):
        assert [l.text for l in _labels(make_query, {"type": "avg", "id": "1"})] == ["Average"]

    def test_percentiles_ascending(self, make_query):
        labels = _labels(make_query, {
            "type": "percentiles", "id": "1", "settings": {"percents": [99, "25", 99.9, 50]},
        })
        assert [l.text for l in labels] == ["p25", "p50", "p99", "p99.9"]

    def test_extended_stats_fixed_order(self, make_query):
        labels = _labels(make_query, {"type": "extended_stats", "id": "1", "meta": {
            "min": True,
            "std_deviation_bounds_upper": True,
            "avg": False,
            "max": True,
            "std_deviation_bounds_lower": True,
        }})
        assert [l.text for l in labels] == ["Max", "Std Dev Lower", "Std Dev Upper", "Min"]

    def test_top_metrics_one_label_per_field(self, make_query):
        labels = _labels(make_query, {"type": "top_metrics", "id": "1", "settings": {
            "order": "desc", "orderBy": "@timestamp", "metrics": ["@value", "@anotherValue"],
        }})
        assert [l.text for l in labels] == ["Top Metrics @value", "Top Metrics @anotherValue"]

    def test_bucket_script_substitutes_metric_labels(self, make_query):
        labels = _labels(
            make_query,
            {
                "type": "bucket_script", "id": "4",
                "pipelineVariables": [{"name": "var1", "pipelineAgg": "1"}, {"name": "var2", "pipelineAgg": "3"}],
                "settings": {"script": "params.var1 * params.var2"},
            },
            metrics=[
                {"id": "1", "type": "sum", "field": "@value"},
                {"id": "3", "type": "max", "field": "@value"},
            ],
        )
        assert [l.text for l in labels] == ["Sum @value * Max @value"]

    def test_bucket_script_does_not_confuse_prefixed_names(self, make_query):
        labels = _labels(
            make_query,
            {
                "type": "bucket_script", "id": "4",
                "pipelineVariables": [{"name": "a", "pipelineAgg": "1"}, {"name": "ab", "pipelineAgg": "2"}],
                "settings": {"script": "params.ab / params.a + params.zz"},
            },
            metrics=[{"id": "1", "type": "count"}, {"id": "2", "type": "sum", "field": "bytes"}],
        )
        assert labels[0].text == "Sum bytes / Count + params.zz"

    def test_pipeline_agg_names_referenced_metric(self, make_query):
        labels = _labels(
            make_query,
            {"type": "derivative", "id": "5", "field": "1"},
            metrics=[{"id": "1", "type": "avg", "field": "load"}],
        )
        assert [l.text for l in labels] == ["Derivative Average load"]

    def test_pipeline_agg_with_unknown_reference_is_unset(self, make_query):
        labels = _labels(make_query, {"type": "moving_avg", "id": "5", "field": "42"})
        assert [l.text for l in labels] == ["Unset"]


class TestFormatting:
    @pytest.mark.parametrize("key,key_as_string,expected", [
        ("server1", None, "server1"),
        (0, None, "0"),
        (1500.0, None, "1500"),
        (1.5, None, "1.5"),
        (True, None, "true"),
        (1, "true", "true"),
        (None, None, ""),
    ])
    def test_format_key(self, key, key_as_string, expected):
        from naming import format_key
        assert format_key(key, key_as_string) == expected

    def test_format_percent(self):
        from naming import format_percent
        assert format_percent(75.0) == "75"
        assert format_percent(99.9) == "99.9"


class TestAlias:
    def _count_label(self):
        from models import MetricAggSpec
        from naming import SeriesLabel
        return SeriesLabel(MetricAggSpec(id="1", type="count"), None, "Count")

    def test_term_and_bare_field_placeholders(self):
        from naming import resolve_alias
        name = resolve_alias(
            "{{term @host}} {{metric}} and {{not_exist}} {{@host}}",
            self._count_label(),
            (("@host", "server1"),),
        )
        assert name == "server1 Count and {{not_exist}} server1"

    def test_unknown_term_left_verbatim(self):
        from naming import resolve_alias
        name = resolve_alias("{{term dc}}-{{metric}}", self._count_label(), (("host", "a"),))
        assert name == "{{term dc}}-Count"

    def test_field_placeholder(self):
        from models import MetricAggSpec
        from naming import SeriesLabel, resolve_alias
        label = SeriesLabel(MetricAggSpec(id="1", type="avg", field="load"), None, "Average", "load")
        assert resolve_alias("{{metric}} of {{field}}", label, ()) == "Average of load"

    def test_filter_placeholder(self):
        from naming import resolve_alias
        name = resolve_alias("{{ filter }}: {{metric}}", self._count_label(), (("filter", "status:500"),))
        assert name == "status:500: Count"

    def test_field_placeholder_uses_top_metrics_sub_field(self, make_query):
        from models import MetricAggSpec
        from naming import expand_metric, resolve_alias
        metric = MetricAggSpec(id="2", type="top_metrics", settings={"metrics": ["@value", "@anotherValue"]})
        labels = expand_metric(metric, make_query())
        names = [resolve_alias("{{metric}} {{field}}", label, ()) for label in labels]
        assert names == ["Top Metrics @value", "Top Metrics @anotherValue"]


class TestSeriesName:
    def _label(self, display, field=None):
        from models import MetricAggSpec
        from naming import SeriesLabel
        return SeriesLabel(MetricAggSpec(id="1", type="avg"), None, display, field)

    def test_no_group_keys_uses_metric_label(self):
        from naming import series_name
        assert series_name(self._label("Average", "v"), (), None, 2) == "Average v"

    def test_single_label_uses_group_keys_only(self):
        from naming import series_name
        assert series_name(self._label("Count"), (("host", "server1"),), None, 1) == "server1"

    def test_multiple_labels_prefix_group_keys(self):
        from naming import series_name
        path = (("host", "server1"), ("dc", "eu"))
        assert series_name(self._label("Average", "@value"), path, None, 2) == "server1 eu Average @value"

    def test_alias_replaces_computed_name(self):
        from naming import series_name
        assert series_name(self._label("Count"), (("host", "h1"),), "{{host}} hits", 3) == "h1 hits"
