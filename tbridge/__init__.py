"""Directory-server client, station list parser, host cache, users, ACL and event hooks for a conference bridge."""

__version__ = "0.1.0"
__all__ = ["dirclient", "eventhook", "hostfile", "protocol", "stationlist", "users"]