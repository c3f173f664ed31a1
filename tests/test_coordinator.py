"""Tests for the request coordinator and the bridge wiring."""

import asyncio
import json
import random
import threading
import unittest

from fakes import DEFAULT_KEY, TAG_UID, VENDOR_KEY, FakeDriver

from filament_bridge.bridge import Bridge
from filament_bridge.coordinator import OperationGate
from filament_bridge.events import CardInserted, CardRemoved
from filament_bridge.exceptions import BusyError


class TestOperationGate(unittest.TestCase):

    def test_hold_and_release(self):
        """Test that the gate is held inside the block and released on errors."""
        gate = OperationGate()
        with self.assertRaises(ValueError):
            with gate.hold():
                self.assertTrue(gate.busy)
                raise ValueError("boom")
        self.assertFalse(gate.busy)

    def test_hold_while_busy(self):
        """Test that holding a held gate raises BusyError."""
        gate = OperationGate()
        with gate.hold():
            with self.assertRaises(BusyError):
                with gate.hold():
                    pass
            self.assertTrue(gate.busy)


class BridgeTestCase(unittest.IsolatedAsyncioTestCase):

    def make_driver(self):
        return FakeDriver()

    async def asyncSetUp(self):
        self.driver = self.make_driver()
        self.builds = 0

        def driver_factory():
            self.builds += 1
            return self.driver

        self.notifications = []
        self.bridge = Bridge(self.notifications.append, driver_factory=driver_factory, interval=3600)
        self.coordinator = self.bridge.coordinator

    async def asyncTearDown(self):
        if self.driver.hold is not None:
            self.driver.hold.set()
        await self.bridge.close()


class TestReadWrite(BridgeTestCase):

    async def test_status_never_builds(self):
        """Test the disconnected snapshot before any session exists."""
        status = self.coordinator.status()
        self.assertEqual(self.builds, 0)
        self.assertFalse(status["connected"])
        self.assertFalse(status["cardPresent"])
        self.assertIsNone(status["uid"])

    async def test_read(self):
        """Test a successful read with the decoded payload."""
        self.driver.blocks[4] = bytes([5, 2, 1] + [0] * 13)
        result = await self.coordinator.read()
        self.assertTrue(result["success"])
        self.assertEqual(result["data"]["material"], 5)
        self.assertEqual(result["data"]["rawData"][:3], [5, 2, 1])
        self.assertFalse(self.bridge.gate.busy)

    async def test_status_after_read(self):
        """Test the status snapshot once the session is running."""
        await self.coordinator.read()
        status = self.coordinator.status()
        self.assertTrue(status["connected"])
        self.assertTrue(status["cardPresent"])
        self.assertEqual(status["uid"], TAG_UID)
        self.assertEqual(status["readerName"], self.driver.reader)

    async def test_write_then_read(self):
        """Test writing codes and reading them back."""
        result = await self.coordinator.write(5, 2, 1)
        self.assertEqual(result, {"success": True})
        result = await self.coordinator.read()
        data = result["data"]
        self.assertEqual((data["material"], data["color"], data["manufacturer"]), (5, 2, 1))
        self.assertEqual(data["rawData"][:3], [5, 2, 1])

    async def test_write_default_manufacturer(self):
        """Test that a missing manufacturer writes 1."""
        await self.coordinator.write("3", "4", None)
        self.assertEqual(self.driver.blocks[4][:3], bytes([3, 4, 1]))

    async def test_write_infinity(self):
        """Test that an infinite code from JSON is written as 0."""
        material = json.loads('{"materialCode": Infinity}')["materialCode"]
        result = await self.coordinator.write(material, 2)
        self.assertEqual(result, {"success": True})
        self.assertEqual(self.driver.blocks[4][:3], bytes([0, 2, 1]))

    async def test_vendor_key_rejected(self):
        """Test a tag that only accepts the factory key."""
        self.driver.accepted_keys = {DEFAULT_KEY}
        self.driver.blocks[4] = bytes([12, 6, 2] + [0] * 13)
        result = await self.coordinator.read()
        self.assertTrue(result["success"])
        self.assertEqual(result["data"]["material"], 12)
        self.assertEqual(self.driver.ops[:2], [("auth", VENDOR_KEY), ("auth", DEFAULT_KEY)])

    async def test_auth_failed_key(self):
        """Test the message key when both keys are rejected."""
        self.driver.accepted_keys = set()
        result = await self.coordinator.write(1, 1)
        self.assertFalse(result["success"])
        self.assertEqual(result["messageKey"], "nfcAuthFailed")
        self.assertIn("SW=6300", result["details"])

    async def test_unknown_error_key(self):
        """Test that other failures map to unknownError with the raw detail."""
        self.driver.read_error = OSError("reader unplugged mid-read")
        result = await self.coordinator.read()
        self.assertEqual(result["messageKey"], "unknownError")
        self.assertEqual(result["details"], "reader unplugged mid-read")
        self.assertFalse(self.bridge.gate.busy)

    async def test_session_busy_maps_to_busy(self):
        """Test that a session-level BusyError becomes the busy key."""
        session = await self.bridge.factory.get_session()
        session._busy = True
        result = await self.coordinator.read()
        session._busy = False
        self.assertEqual(result["messageKey"], "busy")
        self.assertEqual(result["details"], "Busy")

    async def test_manual_read_while_tick_reads(self):
        """Test that a manual read during an auto-detect read gets busy."""
        await self.coordinator.set_auto_detect(True)
        self.driver.hold = threading.Event()
        self.driver.entered.clear()
        self.bridge.auto_detect.last_seen_uid = None
        tick = asyncio.create_task(self.bridge.auto_detect.tick())
        await asyncio.get_running_loop().run_in_executor(None, self.driver.entered.wait, 5)

        result = await self.coordinator.read()
        self.assertEqual(result, {"success": False, "messageKey": "busy"})
        reads = len([op for op, _ in self.driver.ops if op == "read"])

        self.driver.hold.set()
        await tick
        self.assertEqual(len([op for op, _ in self.driver.ops if op == "read"]), reads)

    async def test_mutual_exclusion(self):
        """Test that authenticate/read/write sequences never interleave."""
        self.driver.accepted_keys = {DEFAULT_KEY}
        await self.coordinator.set_auto_detect(True)
        auto = self.bridge.auto_detect
        rng = random.Random(7)

        calls = []
        for i in range(30):
            pick = rng.randrange(3)
            if pick == 0:
                calls.append(self.coordinator.read())
            elif pick == 1:
                calls.append(self.coordinator.write(i, i + 1))
            else:
                auto.last_seen_uid = None
                calls.append(auto.tick())
        await asyncio.gather(*calls)

        # Each sequence is: vendor key rejected, default key accepted, one block op.
        ops = [op for op, _ in self.driver.ops]
        self.assertEqual(len(ops) % 3, 0)
        for i in range(0, len(ops), 3):
            self.assertEqual(ops[i:i + 2], ["auth", "auth"])
            self.assertIn(ops[i + 2], ("read", "write"))
        self.assertFalse(self.bridge.gate.busy)


class TestReaderAbsent(BridgeTestCase):

    def make_driver(self):
        return FakeDriver(reader=None)

    async def test_read_not_connected(self):
        """Test reader absent: status disconnected, read nfcNotConnected."""
        self.assertFalse(self.coordinator.status()["connected"])
        result = await self.coordinator.read()
        self.assertFalse(result["success"])
        self.assertEqual(result["messageKey"], "nfcNotConnected")
        self.assertEqual(result["details"], "NFC_NOT_CONNECTED")


class TestServiceDown(BridgeTestCase):

    def make_driver(self):
        return FakeDriver(start_error=RuntimeError("Failed to establish context: SCARD_E_NO_SERVICE"))

    async def test_read_not_connected(self):
        """Test that a failed session start maps to nfcNotConnected."""
        result = await self.coordinator.read()
        self.assertEqual(result["messageKey"], "nfcNotConnected")
        self.assertIn("SCARD_E_NO_SERVICE", result["details"])
        self.assertEqual(self.driver.stopped, 1)

    async def test_status_reports_start_error(self):
        """Test that status carries the recorded start failure."""
        await self.coordinator.read()
        status = self.coordinator.status()
        self.assertFalse(status["connected"])
        self.assertEqual(status["errorCode"], "PCSC_SERVICE_NOT_RUNNING")

    async def test_manual_requests_force_retry(self):
        """Test that every manual request retries the start."""
        await self.coordinator.read()
        await self.coordinator.write(1, 1)
        self.assertEqual(self.builds, 2)

    async def test_auto_detect_not_enabled(self):
        """Test that enabling auto-detect reports nfcNotConnected."""
        result = await self.coordinator.set_auto_detect(True)
        self.assertFalse(result["enabled"])
        self.assertEqual(result["messageKey"], "nfcNotConnected")
        self.assertFalse(self.bridge.auto_detect.running)


class TestAutoDetectScenario(BridgeTestCase):

    def make_driver(self):
        driver = FakeDriver(uid=None)
        driver.blocks[4] = bytes([5, 2, 1] + [0] * 13)
        return driver

    async def test_insert_then_remove(self):
        """Test one present notification on insert and one absent on removal."""
        result = await self.coordinator.set_auto_detect(True)
        self.assertEqual(result, {"enabled": True})
        auto = self.bridge.auto_detect

        self.driver.sink(CardInserted(uid="04A1B2C3", card="card"))
        await asyncio.sleep(0)
        await auto.tick()
        await auto.tick()
        self.assertEqual(len(self.notifications), 1)
        self.assertTrue(self.notifications[0]["present"])
        self.assertEqual(self.notifications[0]["tagData"]["material"], 5)

        self.driver.sink(CardRemoved())
        await asyncio.sleep(0)
        await auto.tick()
        await auto.tick()
        self.assertEqual(self.notifications[1:], [{"present": False, "tagData": None, "error": None}])

        result = await self.coordinator.set_auto_detect(False)
        self.assertEqual(result, {"enabled": False})
        self.assertEqual(len(self.notifications), 3)


if __name__ == '__main__':
    unittest.main()
