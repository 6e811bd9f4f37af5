"""Tests for core.domain — parsing, description and zone suffixes."""

import pytest

from cfddns.core.domain import FQDN, Wildcard, ZoneSuffixes, parse_domain, safely_to_unicode, sort_domains, to_ascii


class TestParseDomain:
    @pytest.mark.parametrize("raw,expected", [
        ("example.org", FQDN("example.org")),
        ("Sub.Example.ORG.", FQDN("sub.example.org")),
        ("*.example.org", Wildcard("example.org")),
        ("*", Wildcard("")),
    ])
    def test_parse(self, raw, expected):
        assert parse_domain(raw) == expected

    def test_idna_encoding(self):
        assert to_ascii("bücher.example") == "xn--bcher-kva.example"

    def test_unicode_description(self):
        assert safely_to_unicode("xn--bcher-kva.example") == "bücher.example"
        assert FQDN("xn--bcher-kva.example").describe() == "bücher.example"


class TestDnsNames:
    def test_fqdn(self):
        assert FQDN("www.example.org").dns_name_ascii() == "www.example.org"

    def test_wildcard(self):
        assert Wildcard("example.org").dns_name_ascii() == "*.example.org"
        assert Wildcard("example.org").describe() == "*.example.org"

    def test_bare_wildcard(self):
        assert Wildcard("").dns_name_ascii() == "*"


class TestZoneSuffixes:
    def test_fqdn_suffixes(self):
        assert list(FQDN("a.b.c").zones()) == ["a.b.c", "b.c", "c"]

    def test_wildcard_skips_star(self):
        assert list(Wildcard("example.org").zones()) == ["example.org", "org"]

    def test_restartable(self):
        zones = ZoneSuffixes("www.example.org")
        assert list(zones) == list(zones)

    def test_empty_name(self):
        assert list(ZoneSuffixes("")) == []
        assert list(Wildcard("").zones()) == []


class TestSortDomains:
    def test_sorted_by_ascii_name(self):
        domains = [FQDN("b.org"), Wildcard("a.org"), FQDN("a.org")]
        assert sort_domains(domains) == [Wildcard("a.org"), FQDN("a.org"), FQDN("b.org")]
