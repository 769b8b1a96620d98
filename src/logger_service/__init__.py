"""Logger service: consumes events, stores them and serves log queries."""
