from chatrelay.config import BridgeEntry, ChannelOptions, Config, GatewayConfig
from chatrelay.samechannel import same_channel_gateways

TEST_CONFIG = """
[mattermost.test]
[slack.test]

[[samechannelgateway]]
   enable = true
   name = "blah"
      accounts = [ "mattermost.test","slack.test" ]
      channels = [ "testing","testing2","testing10"]
"""

EXPECTED = GatewayConfig(
    name="blah",
    enable=True,
    in_=[],
    out=[],
    inout=[
        BridgeEntry(account=account, channel=channel, options=ChannelOptions(key=""), same_channel=True)
        for account in ("mattermost.test", "slack.test")
        for channel in ("testing", "testing2", "testing10")
    ],
)


def test_get_config():
    cfg = Config.from_string(TEST_CONFIG)
    assert same_channel_gateways(cfg) == [EXPECTED]


def test_expected_order_is_account_major():
    cfg = Config.from_string(TEST_CONFIG)
    entries = same_channel_gateways(cfg)[0].inout
    assert [(e.account, e.channel) for e in entries[:3]] == [
        ("mattermost.test", "testing"),
        ("mattermost.test", "testing2"),
        ("mattermost.test", "testing10"),
    ]


def test_no_same_channel_gateways():
    cfg = Config.from_string("[mattermost.test]\n")
    assert same_channel_gateways(cfg) == []


def test_disabled_gateway_kept_disabled():
    cfg = Config.from_string(
        '[[samechannelgateway]]\nname="off"\naccounts=["slack.test"]\nchannels=[]\n'
    )
    result = same_channel_gateways(cfg)
    assert len(result) == 1
    assert result[0].enable is False
    assert result[0].inout == []