from switchboard.models.channel import Channel

__all__ = ["Channel"]
