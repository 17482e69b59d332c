# chatrelay

chatrelay is the routing core of a chat relay. Accounts on different chat
networks are grouped into *gateways*; a message that arrives on one channel
of a gateway is passed on to the other channels of that gateway, with the
sender's nick, avatar and thread references rewritten for each destination.

The package needs Python 3.11 or later and has no third-party dependencies.

```
pip install .
```

## What the package does not do

The package ships no protocol implementations. It contains no IRC, Slack,
Discord, Mattermost, Telegram or other chat client: the registry of
protocols used by the `chatrelay` command (`chatrelay.cli.FULL_MAP`) is
empty. Every account named in a gateway needs a protocol registered in a
`BridgeMap`; until one is, starting a gateway fails with
`Incorrect protocol ... specified in gateway configuration ...`.

There is no scripting hook for rewriting messages or nicks, and `:emoji:`
codes are passed through unchanged. The `{TENGO}` placeholder in
`RemoteNickFormat` is always replaced with an empty string.

## The command

```
chatrelay --conf chatrelay.toml
```

Options (each may also be written with a single dash):

- `--conf FILE` – configuration file, `chatrelay.toml` by default;
- `--debug` – debug logging (also turned on by the environment variable
  `DEBUG=1`);
- `--version` – print the version and exit.

The command reads the configuration, sets up the gateways, connects every
bridge and relays messages until interrupted with Ctrl-C. It exits with
status 1 when the configuration cannot be read or a gateway cannot be set up.

## Configuration

The configuration is a TOML file; keys are case-insensitive. Each account
has its own table, named `protocol.name`, and each `[[gateway]]` lists the
channels it connects:

```toml
[general]
MediaDownloadPath = "/srv/media"
MediaServerDownload = "https://media.example.com"

[irc.libera]
server = "irc.example.com:6697"
RemoteNickFormat = "[{PROTOCOL}] <{NICK}> "

[slack.work]
server = ""
ShowJoinPart = true

[[gateway]]
name = "bridge1"
enable = true

    [[gateway.inout]]
    account = "irc.libera"
    channel = "#testing"

    [[gateway.inout]]
    account = "slack.work"
    channel = "testing"
```

Channels are listed under `gateway.in` (messages are only read from them),
`gateway.out` (messages are only written to them) or `gateway.inout` (both).
A channel listed both as `in` and `out` becomes `inout`. Only gateways with
`enable = true` are set up, and their names must be present and unique.

IRC channel names are lower-cased. A Mattermost channel must not start with
`#`, and a Zulip channel must name its topic as `stream/topic:mytopic`;
otherwise setting up the gateway fails.

A `[[samechannelgateway]]` table joins every listed account to every listed
channel, relaying only between channels of the same name:

```toml
[[samechannelgateway]]
enable = true
name = "same"
accounts = ["irc.libera", "slack.work"]
channels = ["general", "random"]
```

### Account settings

Settings are looked up in the account's table first and then in
`[general]`:

- `RemoteNickFormat` – how the sender is shown on this account, with the
  placeholders `{NICK}`, `{NOPINGNICK}` (the nick with a zero-width space
  after its first character), `{BRIDGE}`, `{PROTOCOL}`, `{GATEWAY}`,
  `{LABEL}`, `{USERID}` and `{CHANNEL}`;
- `IgnoreNicks`, `IgnoreMessages` – space-separated regular expressions;
  matching senders, texts or file comments are not relayed;
- `ReplaceNicks`, `ReplaceMessages` – lists of `[pattern, replacement]`
  pairs applied to nicks and texts received on this account;
- `ExtractNicks` – `[nick pattern, extract pattern]` pairs: when the sender
  matches the first, the first group of the second is taken out of the text
  and used as the nick;
- `StripNick` – remove every non-alphanumeric character from nicks;
- `Label`, `IconURL` (`{NICK}` is replaced with the nick);
- `ShowJoinPart`, `ShowTopicChange`, `SyncTopic`, `PreserveThreading`.

### Files

Files attached to messages can be published: set `MediaServerUpload` (files
are sent with an HTTP PUT to `<upload>/<sha>/<name>`) or `MediaDownloadPath`
(files are written to `<path>/<sha>/<name>`), together with
`MediaServerDownload`, the public URL the files are then served from.
`<sha>` is the first eight hex digits of the file's SHA-1. With
`IgnoreFailureOnStart = true`, bridges that fail to connect are dropped
instead of stopping the start.

## Using it as a library

`chatrelay.config.Config.from_file()` (or `from_string()`) reads a
configuration; `chatrelay.samechannel.same_channel_gateways()` expands the
same-channel gateways.

A protocol is a `chatrelay.bridge.Bridger` with `connect()`,
`disconnect()`, `join_channel(channel)` and `send(msg)` (returning the ID
the message got, or `""`). It is registered in a
`chatrelay.bridgemap.BridgeMap` as a factory called with the bridge and the
queue on which received `Message` objects are to be put:

```python
from chatrelay.bridge import Bridger
from chatrelay.bridgemap import BridgeMap
from chatrelay.config import Config, Message
from chatrelay.router import Router


class LogBridger(Bridger):
    def __init__(self, bridge, remote):
        self.bridge = bridge
        self.remote = remote  # put received Message objects here

    def connect(self):
        print("connected", self.bridge.account)

    def disconnect(self):
        print("disconnected", self.bridge.account)

    def join_channel(self, channel):
        print("joined", channel.name)

    def send(self, msg: Message) -> str:
        print(f"{msg.channel}: {msg.username}{msg.text}")
        return ""


bridges = BridgeMap()
bridges.register("irc", LogBridger)
bridges.register("slack", LogBridger)

router = Router(Config.from_file("chatrelay.toml"), bridges)
router.start()   # connects, joins and relays in a background thread
router.message.put(Message(text="hello", channel="#testing",
                           username="alice", account="irc.libera"))
router.stop()    # relays what is queued, then stops
```

`register(protocol, factory, user_typing=None)` also records whether the
protocol shows typing indicators; by default only `discord` and `slack` do.
`Router.handle(msg)` processes a single message directly, and a
`chatrelay.gateway.Gateway` keeps the last 5000 message-ID mappings so that
edits, deletions and thread replies reach the right relayed messages.

### Webhooks

`chatrelay.matterhook.Client(url, HookConfig(...))` posts an
`OutgoingMessage` to a Mattermost incoming webhook with `send()` (raising
`HookError` on a non-200 reply) and, unless `disable_server` is set, listens
on `bind_address` (`host:port`) for outgoing-webhook posts.
`chatrelay.rockethook.RocketClient(url, RocketConfig(...))` listens for
Rocket.Chat outgoing-webhook posts. Both reject requests that are not POSTs,
that carry no token or, when a `token` is configured, a different one; they
queue accepted messages for `receive(timeout)`, which raises `TimeoutError`
when nothing arrives in time. Both are context managers and stop their
server on `close()`.