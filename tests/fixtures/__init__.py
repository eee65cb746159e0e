"""In-memory collaborators shared by the test suite."""
