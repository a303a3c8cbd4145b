"""
badnews - systemd journal to Matrix bridge.

Watches the host journal and forwards selected unit log lines into a single
Matrix room. The bot only ever occupies the configured room: invitations to
it are accepted (with capped exponential backoff), all others are declined.

Modules:
- config: YAML configuration loading and validation
- session: login session persistence
- transport: matrix-nio client wrapper (sink + event source)
- journal: journal reader and tail loop
- forwarder: unit filter table and record -> message forwarding
- autojoin: invitation policy and join retry state machine
"""

__version__ = "0.2.0"
