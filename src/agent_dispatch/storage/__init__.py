"""SQLite storage primitives shared by the dispatch log and its collaborators."""
