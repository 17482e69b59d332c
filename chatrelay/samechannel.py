"""Expansion of same-channel gateway definitions into plain gateways."""

from __future__ import annotations

from chatrelay.config import BridgeEntry, Config, GatewayConfig


def same_channel_gateways(config: Config) -> list[GatewayConfig]:
    """Join each account to each channel of every same-channel gateway."""
    return [
        GatewayConfig(
            name=sgw.name,
            enable=sgw.enable,
            inout=[
                BridgeEntry(account=account, channel=channel, same_channel=True)
                for account in sgw.accounts
                for channel in sgw.channels
            ],
        )
        for sgw in config.same_channel_gateways
    ]