"""Report orchestration, attribution and datastore repositories."""
