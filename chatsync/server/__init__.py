"""Reference chat backend serving the REST API consumed by :class:`chatsync.transport.HttpTransport`."""
