"""CultureCart backend functions: nightly analytics aggregation and order notifications."""
