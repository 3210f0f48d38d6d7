"""Document store, ranking and search for SiteCorpus."""
