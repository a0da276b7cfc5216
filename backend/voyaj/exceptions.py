class VoyajError(Exception):
    """Base class for coordination engine errors."""


class TripNotFoundError(VoyajError):
    def __init__(self, trip_id):
        super().__init__(f"Trip {trip_id} not found")
        self.trip_id = trip_id


class UnknownStageError(VoyajError):
    pass


class CascadeLimitError(VoyajError):
    """Stage evaluation kept transitioning past the configured step limit."""


class HandoffError(VoyajError):
    """A handler handed off twice, or back to a handler already visited."""


class ClassifierError(VoyajError):
    pass
