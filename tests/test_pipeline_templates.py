"""Tests for ${NAME} reference resolution."""

from __future__ import annotations

from pipewright.pipeline.templates import TemplateResolver


class TestTemplateResolverReferences:
    def test_simple_reference(self):
        resolver = TemplateResolver({"IMAGE": "shop/api", "TAG": "1.4"})
        assert resolver.resolve("docker build -t ${IMAGE}:${TAG} .") == "docker build -t shop/api:1.4 ."

    def test_whitespace_inside_braces(self):
        resolver = TemplateResolver({"TAG": "1.4"})
        assert resolver.resolve("${ TAG }") == "1.4"

    def test_unknown_reference_left_in_place(self):
        resolver = TemplateResolver({})
        assert resolver.resolve("echo ${HOME}/bin") == "echo ${HOME}/bin"

    def test_no_reference_passthrough(self):
        resolver = TemplateResolver({"A": "1"})
        assert resolver.resolve("make test") == "make test"

    def test_escape(self):
        resolver = TemplateResolver({"NAME": "x"})
        assert resolver.resolve("echo $${NAME} ${NAME}") == "echo ${NAME} x"


class TestTemplateDefaults:
    def test_default_used_when_missing(self):
        resolver = TemplateResolver({})
        assert resolver.resolve("${REGISTRY:-docker.io}/app") == "docker.io/app"

    def test_default_used_when_empty(self):
        resolver = TemplateResolver({"REGISTRY": ""})
        assert resolver.resolve("${REGISTRY:-docker.io}") == "docker.io"

    def test_value_wins_over_default(self):
        resolver = TemplateResolver({"REGISTRY": "ghcr.io"})
        assert resolver.resolve("${REGISTRY:-docker.io}") == "ghcr.io"

    def test_empty_default(self):
        resolver = TemplateResolver({})
        assert resolver.resolve("[${FLAGS:-}]") == "[]"


class TestTemplateFilters:
    def test_builtin_filters(self):
        resolver = TemplateResolver({"BRANCH": "  Feature/X  "})
        assert resolver.resolve("${BRANCH | trim}") == "Feature/X"
        assert resolver.resolve("${BRANCH | lower}") == "  feature/x  "
        assert resolver.resolve("${BRANCH | upper}") == "  FEATURE/X  "

    def test_filter_with_default(self):
        resolver = TemplateResolver({})
        assert resolver.resolve("${ENV:-Prod | lower}") == "prod"

    def test_unknown_filter_returns_value(self):
        resolver = TemplateResolver({"A": "x"})
        assert resolver.resolve("${A | nope}") == "x"

    def test_filter_on_unknown_reference_left_in_place(self):
        resolver = TemplateResolver({})
        assert resolver.resolve("${A | lower}") == "${A | lower}"

