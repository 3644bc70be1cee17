"""Command groups registered on the ``dhportal`` CLI."""
