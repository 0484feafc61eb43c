"""meshgate: keep an ephemeral node on a private overlay network and put one
internal application behind overlay-identity authentication."""

__version__ = "0.1.0"
