# tbridge

Building blocks for the directory side of an amateur-radio VoIP conference
bridge. It uses only the standard library.

## Modules

- `tbridge.hostfile`: `HostCache` caches host name lookups. A background
  thread re-resolves the cached names and writes them to
  `<temp_dir>/<app_name>.hosts`. `HostCache.update` loads that file back
  once it is ready. `dump` lists the cache as text lines. The module also
  has `inet_addr` and `inet_ntoa` for IPv4 addresses held as integers.
  `inet_addr` returns `None` for text that is not an address.
- `tbridge.users`: `UserDirectory` holds the known stations (`UserInfo`).
  They can be looked up by callsign, address or node id. New stations get
  node ids from 1001 upward. `AccessControlList` holds `allow`/`deny` rules
  (`ACLEntry`), keyed by base callsign. It loads and saves these rules in a
  file named by `acl_filename(app_name)`. A host name that cannot be
  resolved raises `ResolutionError`.
- `tbridge.eventhook`: `EventHook` queues event lines and runs a configured
  script for each one in turn. Call `poll()` to reap a finished run and
  start the next one. `build_argv` shows how an event line becomes the
  script's arguments. Chat events keep their whole text in one argument.
- `tbridge.stationlist`: `StationListParser` reads a directory server's
  station list into a `UserDirectory`. The list may be plain,
  zlib-compressed or differential. `clean_user_list` ages out stations that
  have left the list and can write a hosts file of the active ones.
  `descramble_ip` decodes addresses from iLink-style servers.
- `tbridge.protocol`: builds the login, station-list and check-call
  requests (`build_login_message`, `station_list_request`,
  `check_call_request`). `parse_login_reply` reads the two-byte login reply.
  It raises `LoginRejected` or `DirectoryError` when the login fails.
  `DirectoryConfig` holds the settings and `ServerRequest` lists the
  request kinds.
- `tbridge.dirclient`: `DirectoryClient.request` connects to a directory
  server and carries out one request. When a server fails, it tries the
  next server in the list. It keeps one `ServerStats` per server.
  `validate_callsign` asks whether a callsign is logged in at an address.
  `apply_check_call` records the answer.

## Example

```python
from tbridge.users import UserDirectory
from tbridge.stationlist import StationListParser

users = UserDirectory()
parser = StationListParser(users)
data = b"@@@\n1\nN0CALL\nSomewhere [ON 12:00]\n1234\n10.0.0.1\n+++\n"
if parser.feed(data):
    result = parser.finish()
    print(result.active_entries)          # 1
for user in users:
    print(user.callsign, user.node_id)    # N0CALL 1234
```

## What it does not do

There is no command-line program, and no main loop or conference server
that ties these parts together. Callers run `DirectoryClient` requests,
call `HostCache.update` and call `EventHook.poll` themselves.
`DirectoryClient` talks to servers with blocking sockets, and its timeout
is 30 seconds.

## Tests

```
pip install .[test]
pytest
```