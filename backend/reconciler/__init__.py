"""GameLine reconciliation engine: odds cascade, identity matching, dedupe, consensus, merge."""
