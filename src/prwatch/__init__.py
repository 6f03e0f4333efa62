"""Watch a GitHub pull request and surface new, actionable problems."""
