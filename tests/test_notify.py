import logging

from alarms.notify import Notification, Notifier


class FakeSpeaker:
    available = True

    def __init__(self):
        self.spoken = []

    def speak_async(self, text):
        self.spoken.append(text)
        return True


def test_ui_callback_receives_notification():
    received = []
    notifier = Notifier(desktop=False, ui_callback=received.append)
    stops = []
    notification = Notification("Coffee", "Alarm for 07:30", alarm_id="a", action_label="Stop", action=lambda: stops.append("a"))

    notifier.notify(notification)

    assert received == [notification]
    received[0].action()
    assert stops == ["a"]


def test_failing_callback_is_logged_not_raised(caplog):
    def boom(_):
        raise RuntimeError("ui gone")

    notifier = Notifier(desktop=False, ui_callback=boom)
    with caplog.at_level(logging.ERROR, logger="alarms.notify"):
        notifier.notify(Notification("Coffee", "Alarm for 07:30"))
    assert "UI callback failed" in caplog.text


def test_speaker_announces_title_and_message():
    speaker = FakeSpeaker()
    notifier = Notifier(desktop=False, speaker=speaker)
    notifier.notify(Notification("Coffee", "Alarm for 07:30"))
    assert speaker.spoken == ["Coffee. Alarm for 07:30"]


def test_callback_can_be_replaced():
    first, second = [], []
    notifier = Notifier(desktop=False, ui_callback=first.append)
    notifier.set_ui_callback(second.append)
    notifier.notify(Notification("Tea", "Alarm for 08:00"))
    assert first == []
    assert len(second) == 1
