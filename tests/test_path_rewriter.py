"""
Tests for PathRewriter - prefix strip and rule ordering.
"""

import re

import pytest

from core.proxy import PathRewriter


class TestProxyPrefix:

    def setup_method(self):
        self.rewriter = PathRewriter({'^/proxy': ''})

    @pytest.mark.parametrize("path,expected", [
        ('/proxy/api/users', '/api/users'),
        ('/proxy/items', '/items'),
        ('/proxy/', '/'),
        ('/proxy', '/'),
        ('/proxy/proxy/nested', '/proxy/nested'),
    ])
    def test_prefix_removed_once(self, path, expected):
        assert self.rewriter.rewrite(path) == expected

    def test_non_matching_path_unchanged(self):
        assert self.rewriter.rewrite('/api/proxy') == '/api/proxy'

    def test_prefix_only_matches_at_start(self):
        assert self.rewriter.rewrite('/v1/proxy/x') == '/v1/proxy/x'


class TestRuleOrdering:

    def test_first_matching_rule_wins(self):
        rewriter = PathRewriter({'^/api/old': '/api/new', '^/api': '/v2'})
        assert rewriter.rewrite('/api/old/x') == '/api/new/x'
        assert rewriter.rewrite('/api/other') == '/v2/other'

    def test_missing_leading_slash_added(self):
        rewriter = PathRewriter({'^/strip/': ''})
        assert rewriter.rewrite('/strip/a/b') == '/a/b'

    def test_empty_rules(self):
        rewriter = PathRewriter({})
        assert len(rewriter) == 0
        assert rewriter.rewrite('/proxy/x') == '/proxy/x'


class TestInvalidRules:

    def test_bad_regex(self):
        with pytest.raises(re.error):
            PathRewriter({'^/proxy(': ''})

    def test_non_string_replacement(self):
        with pytest.raises(TypeError):
            PathRewriter({'^/proxy': None})
