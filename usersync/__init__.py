"""usersync: keeps a local user store in sync with Clerk user webhooks."""

__version__ = "0.1.0"
