"""Tests for the result change notifier."""
import asyncio
import threading

from src.data_models.schemas import VotingResult
from src.voting.notifier import ChangeNotifier

ORG = "org-1"
URL = "https://proposals.example.org/1"


def result(in_favor, against=0, url=URL, org=ORG):
    return VotingResult(organization_id=org, proposal_url=url, in_favor=in_favor, against=against)


class TestChangeNotifier:
    def test_publish_without_subscribers(self):
        notifier = ChangeNotifier()
        assert notifier.publish(ORG, URL, result(1)) == 0

    def test_subscriber_receives_only_its_topic(self):
        async def run():
            notifier = ChangeNotifier()
            subscription = notifier.subscribe(ORG, URL)

            notifier.publish(ORG, "https://proposals.example.org/other", result(5, url="https://proposals.example.org/other"))
            notifier.publish("org-2", URL, result(6, org="org-2"))
            delivered = notifier.publish(ORG, URL, result(2, 1))

            received = await subscription.get(timeout=1)
            nothing = await subscription.get(timeout=0.05)
            subscription.close()
            return delivered, received, nothing, notifier.subscriber_count(ORG, URL)

        delivered, received, nothing, remaining = asyncio.run(run())
        assert delivered == 1
        assert (received.in_favor, received.against) == (2, 1)
        assert nothing is None
        assert remaining == 0

    def test_no_replay_for_late_subscribers(self):
        async def run():
            notifier = ChangeNotifier()
            notifier.publish(ORG, URL, result(1))
            subscription = notifier.subscribe(ORG, URL)
            received = await subscription.get(timeout=0.05)
            subscription.close()
            return received

        assert asyncio.run(run()) is None

    def test_publish_from_worker_thread(self):
        async def run():
            notifier = ChangeNotifier()
            with notifier.subscribe(ORG, URL) as subscription:
                worker = threading.Thread(target=notifier.publish, args=(ORG, URL, result(3)))
                worker.start()
                received = await subscription.get(timeout=1)
                worker.join()
            return received, notifier.subscriber_count(ORG, URL)

        received, remaining = asyncio.run(run())
        assert received.in_favor == 3
        assert remaining == 0

    def test_full_queue_drops_oldest(self):
        async def run():
            notifier = ChangeNotifier(queue_size=2)
            subscription = notifier.subscribe(ORG, URL)
            for count in (1, 2, 3):
                notifier.publish(ORG, URL, result(count))
            await asyncio.sleep(0)
            first = await subscription.get(timeout=1)
            second = await subscription.get(timeout=1)
            subscription.close()
            return first.in_favor, second.in_favor, subscription.dropped

        assert asyncio.run(run()) == (2, 3, 1)
