class GiveawayError(Exception):
    pass


class ChannelBusyError(GiveawayError):
    def __init__(self, channel: str):
        super().__init__(f"giveaway already open in {channel}")
        self.channel = channel


class ChatJoinError(GiveawayError):
    pass


class GiveawayNotFound(GiveawayError):
    def __init__(self, giveaway_id: str):
        super().__init__("not found")
        self.giveaway_id = giveaway_id


class SignatureMismatch(GiveawayError):
    pass


class CollectorUnavailable(GiveawayError):
    pass


class AnnouncementError(GiveawayError):
    pass
