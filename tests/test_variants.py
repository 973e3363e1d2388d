"""Tests for secret variant factories."""

import pytest

from logmask.core.variants import (
    KNOWN_VARIANTS,
    BashQuotedVariants,
    BatchEscapedVariants,
    DollarEscapedVariants,
    SecretVariantFactory,
    expand_secret,
    get_variant_factories,
)


class TestBashQuotedVariants:

    def test_plain_secret_has_no_variant(self):
        assert list(BashQuotedVariants().variants("s3cr3t_Token-1.2")) == []

    def test_metacharacters_quoted(self):
        assert list(BashQuotedVariants().variants("my secret")) == ["'my secret'"]

    def test_single_quote_rewritten(self):
        forms = list(BashQuotedVariants().variants("it's"))
        assert forms == ["'it'\\''s'", "it'\\''s"]


class TestDollarEscapedVariants:

    def test_no_dollar(self):
        assert list(DollarEscapedVariants().variants("plain")) == []

    def test_dollar_doubled(self):
        assert list(DollarEscapedVariants().variants("a$b$")) == ["a$$b$$"]


class TestBatchEscapedVariants:

    def test_no_special(self):
        assert list(BatchEscapedVariants().variants("plain")) == []

    def test_caret_escaped(self):
        assert list(BatchEscapedVariants().variants("a&b|c^")) == ["a^&b^|c^^"]


class TestVariantRegistry:

    def test_all_known_by_default(self):
        names = [f.name for f in get_variant_factories()]
        assert names == list(KNOWN_VARIANTS)

    def test_selected_in_order(self):
        names = [f.name for f in get_variant_factories(["dollar", "bash"])]
        assert names == ["dollar", "bash"]

    def test_empty_selection(self):
        assert get_variant_factories([]) == []

    def test_unknown_name(self):
        with pytest.raises(ValueError, match="powershell"):
            get_variant_factories(["powershell"])

    def test_factories_satisfy_protocol(self):
        for factory in get_variant_factories():
            assert isinstance(factory, SecretVariantFactory)


class TestExpandSecret:

    def test_literal_always_included(self):
        assert expand_secret("plain", get_variant_factories()) == {"plain"}

    def test_variants_collected(self):
        forms = expand_secret("a$ b", get_variant_factories(["bash", "dollar"]))
        assert forms == {"a$ b", "'a$ b'", "a$$ b"}

    def test_empty_variants_dropped(self):
        class EmptyVariant:
            name = "empty"

            def variants(self, secret):
                return ["", secret.upper()]

        assert expand_secret("abc", [EmptyVariant()]) == {"abc", "ABC"}
