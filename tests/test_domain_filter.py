"""Tests for domain allow/deny matching."""

import unittest

from sandbox_runtime.domain_filter import DomainFilter, domain_matches, normalize_host


class TestDomainMatches(unittest.TestCase):
    """Test single-pattern matching."""

    def test_exact_match(self):
        self.assertTrue(domain_matches("example.com", "example.com"))
        self.assertFalse(domain_matches("api.example.com", "example.com"))

    def test_wildcard_matches_subdomains_only(self):
        """Test that *.example.com excludes the apex domain."""
        self.assertTrue(domain_matches("api.example.com", "*.example.com"))
        self.assertTrue(domain_matches("a.b.example.com", "*.example.com"))
        self.assertFalse(domain_matches("example.com", "*.example.com"))
        self.assertFalse(domain_matches("badexample.com", "*.example.com"))

    def test_pattern_is_normalized(self):
        self.assertTrue(domain_matches("example.com", "Example.COM."))

    def test_empty_pattern_never_matches(self):
        self.assertFalse(domain_matches("example.com", ""))


class TestNormalizeHost(unittest.TestCase):
    def test_normalization(self):
        self.assertEqual(normalize_host("GitHub.com."), "github.com")
        self.assertEqual(normalize_host("[::1]"), "::1")
        self.assertEqual(normalize_host(None), "")


class TestDomainFilter(unittest.TestCase):
    """Test the allow/deny decision."""

    def test_no_rules_allows_everything(self):
        self.assertTrue(DomainFilter().is_allowed("anything.example"))

    def test_deny_list_only(self):
        """Test that only listed domains are refused when nothing is allow-listed."""
        rules = DomainFilter(denied_domains={"evil.example"})
        self.assertFalse(rules.is_allowed("evil.example"))
        self.assertTrue(rules.is_allowed("good.example"))
        self.assertTrue(rules.is_allowed("other.example"))

    def test_allow_list_is_default_deny(self):
        """Test that a non-empty allow list refuses everything else."""
        rules = DomainFilter(allowed_domains={"good.example"})
        self.assertTrue(rules.is_allowed("good.example"))
        self.assertFalse(rules.is_allowed("other.example"))

    def test_deny_wins_over_allow(self):
        """Test that a domain in both lists is refused."""
        rules = DomainFilter(
            allowed_domains={"both.example", "*.example"},
            denied_domains={"both.example"},
        )
        self.assertFalse(rules.is_allowed("both.example"))
        self.assertTrue(rules.is_allowed("fine.example"))

    def test_wildcard_deny_beats_exact_allow(self):
        rules = DomainFilter(
            allowed_domains={"api.corp.example"},
            denied_domains={"*.corp.example"},
        )
        self.assertFalse(rules.is_allowed("api.corp.example"))

    def test_case_and_trailing_dot_ignored(self):
        rules = DomainFilter(allowed_domains={"github.com"})
        self.assertTrue(rules.is_allowed("GITHUB.COM."))

    def test_empty_host_refused(self):
        self.assertFalse(DomainFilter().is_allowed(""))
        self.assertFalse(DomainFilter().is_allowed(None))

    def test_revoked_refuses_everything(self):
        """Test the fail-closed filter."""
        rules = DomainFilter.revoked()
        self.assertFalse(rules.is_allowed("example.com"))
        self.assertIn("deny_all", repr(rules))


if __name__ == "__main__":
    unittest.main()
