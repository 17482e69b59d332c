from collections import Counter

import pytest

from chatrelay.bridge import Bridger
from chatrelay.bridgemap import BridgeMap
from chatrelay.config import ChannelInfo, Config, Event, Message
from chatrelay.gateway import BrMsgID, GatewayError
from chatrelay.router import Router

TESTCONFIG = """
[irc.freenode]
server=""
[mattermost.test]
server=""
[gitter.42wim]
server=""
[discord.test]
server=""
[slack.test]
server=""

[[gateway]]
    name = "bridge1"
    enable=true

    [[gateway.inout]]
    account = "irc.freenode"
    channel = "#wimtesting"

    [[gateway.inout]]
    account="gitter.42wim"
    channel="42wim/testroom"
    #channel="matterbridge/Lobby"

    [[gateway.inout]]
    account = "discord.test"
    channel = "general"

    [[gateway.inout]]
    account="slack.test"
    channel="testing"
"""

TESTCONFIG2 = """
[irc.freenode]
server=""
[mattermost.test]
server=""
[gitter.42wim]
server=""
[discord.test]
server=""
[slack.test]
server=""

[[gateway]]
    name = "bridge1"
    enable=true

    [[gateway.in]]
    account = "irc.freenode"
    channel = "#wimtesting"

    [[gateway.in]]
    account="gitter.42wim"
    channel="42wim/testroom"

    [[gateway.inout]]
    account = "discord.test"
    channel = "general"

    [[gateway.out]]
    account="slack.test"
    channel="testing"
[[gateway]]
    name = "bridge2"
    enable=true

    [[gateway.in]]
    account = "irc.freenode"
    channel = "#wimtesting2"

    [[gateway.out]]
    account="gitter.42wim"
    channel="42wim/testroom"

    [[gateway.out]]
    account = "discord.test"
    channel = "general2"
"""

TESTCONFIG3 = """
[irc.zzz]
server=""
[telegram.zzz]
server=""
[slack.zzz]
server=""
[[gateway]]
name="bridge"
enable=true

    [[gateway.inout]]
    account="irc.zzz"
    channel="#main"

    [[gateway.inout]]
    account="telegram.zzz"
    channel="-1111111111111"

    [[gateway.inout]]
    account="slack.zzz"
    channel="irc"

[[gateway]]
name="announcements"
enable=true

    [[gateway.in]]
    account="telegram.zzz"
    channel="-2222222222222"

    [[gateway.out]]
    account="irc.zzz"
    channel="#main"

    [[gateway.out]]
    account="irc.zzz"
    channel="#main-help"

    [[gateway.out]]
    account="telegram.zzz"
    channel="--333333333333"

    [[gateway.out]]
    account="slack.zzz"
    channel="general"

[[gateway]]
name="bridge2"
enable=true

    [[gateway.inout]]
    account="irc.zzz"
    channel="#main-help"

    [[gateway.inout]]
    account="telegram.zzz"
    channel="--444444444444"

[[gateway]]
name="bridge3"
enable=true

    [[gateway.inout]]
    account="irc.zzz"
    channel="#main-telegram"

    [[gateway.inout]]
    account="telegram.zzz"
    channel="--333333333333"
"""

SIMPLE = """
[general]
IgnoreFailureOnStart = {ignore}

[irc.test]
server="irc.example.com"
[slack.test]
token="token"

[[gateway]]
name="main"
enable=true

    [[gateway.inout]]
    account="irc.test"
    channel="#Test"

    [[gateway.inout]]
    account="slack.test"
    channel="general"
"""

IRC = "irc.zzz"
TG = "telegram.zzz"
SLACK = "slack.zzz"

PROTOCOLS = ("irc", "gitter", "discord", "slack", "mattermost", "telegram")


class FakeBridger(Bridger):
    def __init__(self, bridge, remote, fail_connect=False, fail_join=False):
        self.bridge = bridge
        self.remote = remote
        self.fail_connect = fail_connect
        self.fail_join = fail_join
        self.sent = []
        self.joins = []
        self.connects = 0
        self.disconnects = 0

    def connect(self):
        self.connects += 1
        if self.fail_connect:
            raise ConnectionError("refused")

    def disconnect(self):
        self.disconnects += 1

    def join_channel(self, channel):
        if self.fail_join:
            raise ConnectionError("cannot join")
        self.joins.append(channel.name)

    def send(self, msg):
        self.sent.append(msg)
        return f"m{len(self.sent)}"


def make_map(failing_connect=(), failing_join=()):
    bridge_map = BridgeMap()

    def factory(bridge, remote):
        return FakeBridger(
            bridge,
            remote,
            fail_connect=bridge.account in failing_connect,
            fail_join=bridge.account in failing_join,
        )

    for protocol in PROTOCOLS:
        bridge_map.register(protocol, factory)
    return bridge_map


def make_router(text, **kwargs):
    return Router(
        Config.from_string(text),
        make_map(**kwargs),
        sleep=lambda seconds: None,
        spawn=lambda fn, *args: fn(*args),
    )


def ch(name, account, direction, gateway):
    return ChannelInfo(
        name=name,
        account=account,
        direction=direction,
        id=name + account,
        same_channel={gateway: False},
    )


def by_id(channels):
    return sorted(channels, key=lambda c: c.id)


# For each gateway: the source channels that relay, and per destination account
# the channels a relayed message goes to.
ADVANCED = {
    "bridge": (
        {"#main", "-1111111111111", "irc"},
        {
            IRC: [ch("#main", IRC, "inout", "bridge")],
            TG: [ch("-1111111111111", TG, "inout", "bridge")],
            SLACK: [ch("irc", SLACK, "inout", "bridge")],
        },
    ),
    "bridge2": (
        {"#main-help", "--444444444444"},
        {
            IRC: [ch("#main-help", IRC, "inout", "bridge2")],
            TG: [ch("--444444444444", TG, "inout", "bridge2")],
        },
    ),
    "bridge3": (
        {"#main-telegram", "--333333333333"},
        {
            IRC: [ch("#main-telegram", IRC, "inout", "bridge3")],
            TG: [ch("--333333333333", TG, "inout", "bridge3")],
        },
    ),
    "announcements": (
        {"-2222222222222"},
        {
            IRC: [
                ch("#main", IRC, "out", "announcements"),
                ch("#main-help", IRC, "out", "announcements"),
            ],
            SLACK: [ch("general", SLACK, "out", "announcements")],
            TG: [ch("--333333333333", TG, "out", "announcements")],
        },
    ),
}


def test_new_router():
    r = make_router(TESTCONFIG)
    assert len(r.gateways) == 1
    assert len(r.gateways["bridge1"].bridges) == 4
    assert len(r.gateways["bridge1"].channels) == 4
    r = make_router(TESTCONFIG2)
    assert len(r.gateways) == 2
    assert len(r.gateways["bridge1"].bridges) == 4
    assert len(r.gateways["bridge2"].bridges) == 3
    assert len(r.gateways["bridge1"].channels) == 4
    assert len(r.gateways["bridge2"].channels) == 3
    assert r.gateways["bridge2"].channels["42wim/testroomgitter.42wim"] == ch(
        "42wim/testroom", "gitter.42wim", "out", "bridge2"
    )
    assert r.gateways["bridge1"].channels["42wim/testroomgitter.42wim"] == ch(
        "42wim/testroom", "gitter.42wim", "in", "bridge1"
    )
    assert r.gateways["bridge1"].channels["generaldiscord.test"] == ch(
        "general", "discord.test", "inout", "bridge1"
    )


def test_get_dest_channel():
    r = make_router(TESTCONFIG2)
    msg = Message(
        text="test", channel="general", account="discord.test",
        gateway="bridge1", protocol="discord", username="test",
    )
    gw = r.gateways["bridge1"]
    expected = {
        "discord.test": [ch("general", "discord.test", "inout", "bridge1")],
        "slack.test": [ch("testing", "slack.test", "out", "bridge1")],
        "gitter.42wim": [],
        "irc.freenode": [],
    }
    for br in gw.bridges.values():
        assert gw.dest_channels(msg, br) == expected[br.account]


def test_announcements_fan_out_from_in_channel():
    r = make_router(TESTCONFIG3)
    gw = r.gateways["announcements"]
    msg = Message(text="news", channel="-2222222222222", account=TG, gateway="announcements")
    assert by_id(gw.dest_channels(msg, gw.bridges[IRC])) == by_id(ADVANCED["announcements"][1][IRC])
    out_msg = Message(text="reply", channel="#main", account=IRC, gateway="announcements")
    assert gw.dest_channels(out_msg, gw.bridges[TG]) == []


def test_bridges_are_shared_between_gateways():
    r = make_router(TESTCONFIG2)
    assert r.gateways["bridge1"].bridges["irc.freenode"] is r.gateways["bridge2"].bridges["irc.freenode"]
    assert r.get_bridge("irc.freenode") is r.gateways["bridge1"].bridges["irc.freenode"]
    assert r.get_bridge("unknown.account") is None


def test_gateway_without_name_is_rejected():
    text = '[irc.test]\nserver="x"\n[[gateway]]\nenable=true\n[[gateway.inout]]\naccount="irc.test"\nchannel="#a"\n'
    with pytest.raises(GatewayError, match="without name"):
        make_router(text)


def test_duplicate_gateway_is_rejected():
    block = '[[gateway]]\nname="dup"\nenable=true\n[[gateway.inout]]\naccount="irc.test"\nchannel="#a"\n'
    with pytest.raises(GatewayError, match="dup already exists"):
        make_router('[irc.test]\nserver="x"\n' + block + block)


def test_disabled_gateway_is_skipped():
    text = '[irc.test]\nserver="x"\n[[gateway]]\nname="off"\nenable=false\n[[gateway.inout]]\naccount="irc.test"\nchannel="#a"\n'
    assert make_router(text).gateways == {}


def test_same_channel_gateway_is_added():
    text = """
[irc.test]
server="x"
[slack.test]
token="token"
[[samechannelgateway]]
enable=true
name="same"
accounts=["irc.test","slack.test"]
channels=["general"]
"""
    r = make_router(text)
    channel = r.gateways["same"].channels["generalirc.test"]
    assert channel.same_channel == {"same": True}
    assert channel.direction == "inout"
    assert set(r.gateways["same"].bridges) == {"irc.test", "slack.test"}


def test_start_without_gateways_fails():
    with pytest.raises(GatewayError, match="no \\[\\[gateway\\]\\] configured"):
        make_router('[irc.test]\nserver="x"\n').start()


def test_start_connects_and_joins():
    r = make_router(SIMPLE.format(ignore="false"))
    r.start()
    r.stop()
    irc = r.get_bridge("irc.test").bridger
    slack = r.get_bridge("slack.test").bridger
    assert irc.connects == 1
    assert irc.joins == ["#test"]
    assert slack.joins == ["general"]


def test_start_failure_raises():
    r = make_router(SIMPLE.format(ignore="false"), failing_connect={"slack.test"})
    with pytest.raises(GatewayError, match="slack.test failed to start"):
        r.start()


def test_start_join_failure_raises():
    r = make_router(SIMPLE.format(ignore="false"), failing_join={"irc.test"})
    with pytest.raises(GatewayError, match="irc.test failed to join channel"):
        r.start()


def test_start_ignores_failure_when_configured():
    r = make_router(SIMPLE.format(ignore="true"), failing_connect={"slack.test"})
    r.start()
    r.stop()
    assert set(r.gateways["main"].bridges) == {"irc.test"}


def test_handle_relays_and_caches_ids():
    r = make_router(SIMPLE.format(ignore="false"))
    msg = Message(text="hello", channel="#test", account="irc.test", username="alice", id="42")
    r.handle(msg)
    irc_bridge = r.get_bridge("irc.test")
    slack_bridge = r.get_bridge("slack.test")
    assert irc_bridge.bridger.sent == []
    assert len(slack_bridge.bridger.sent) == 1
    out = slack_bridge.bridger.sent[0]
    assert out.channel == "general"
    assert out.text == "hello"
    assert msg.protocol == "irc"
    assert msg.gateway == "main"
    assert r.gateways["main"].messages.get("irc 42") == [
        BrMsgID(slack_bridge, "slack m1", "generalslack.test")
    ]


def test_handle_edit_reuses_relayed_id():
    r = make_router(SIMPLE.format(ignore="false"))
    r.handle(Message(text="hello", channel="#test", account="irc.test", id="42"))
    r.handle(Message(text="hello again", channel="#test", account="irc.test", id="42"))
    sent = r.get_bridge("slack.test").bridger.sent
    assert [m.id for m in sent] == ["", "m1"]
    assert r.gateways["main"].messages.get("irc 42")[0].id == "slack m1"


def test_handle_unknown_account_is_dropped():
    r = make_router(SIMPLE.format(ignore="false"))
    r.handle(Message(text="hi", channel="#test", account="irc.other"))
    assert r.get_bridge("slack.test").bridger.sent == []
    assert r.get_bridge("irc.test").bridger.sent == []


def test_failure_event_reconnects_bridge():
    r = make_router(SIMPLE.format(ignore="false"))
    r.handle(Message(event=Event.FAILURE, account="irc.test"))
    bridger = r.get_bridge("irc.test").bridger
    assert bridger.disconnects == 1
    assert bridger.connects == 1
    assert bridger.joins == ["#test"]
    assert r.get_bridge("slack.test").bridger.sent == []


def test_rejoin_event_joins_again():
    r = make_router(SIMPLE.format(ignore="false"))
    bridge = r.get_bridge("slack.test")
    bridge.join_channels()
    r.handle(Message(event=Event.REJOIN_CHANNELS, account="slack.test"))
    assert bridge.bridger.joins == ["general", "general"]


def test_channel_members_event_sets_members():
    r = make_router(SIMPLE.format(ignore="false"))
    r.handle(
        Message(
            event=Event.GET_CHANNEL_MEMBERS,
            account="slack.test",
            extra={Event.GET_CHANNEL_MEMBERS: [["alice", "bob"]]},
        )
    )
    assert r.get_bridge("slack.test").channel_members == ["alice", "bob"]


def test_run_processes_queue_until_stop():
    r = make_router(SIMPLE.format(ignore="false"))
    r.start()
    r.message.put(Message(text="queued", channel="general", account="slack.test"))
    r.stop()
    sent = r.get_bridge("irc.test").bridger.sent
    assert [m.text for m in sent] == ["queued"]
    assert sent[0].channel == "#test"