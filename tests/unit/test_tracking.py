"""Tests for purchase_sync.tracking."""

from __future__ import annotations

from purchase_sync.models import TrackingNumber
from purchase_sync.tracking import detect_tracking_numbers, infer_carrier


class TestDetectTrackingNumbers:
    """Tests for detect_tracking_numbers()."""

    def test_ups_number(self) -> None:
        found = detect_tracking_numbers("Your parcel 1Z999AA10123456784 is on its way")
        assert found == [TrackingNumber(number="1Z999AA10123456784", carrier="ups")]

    def test_case_collapsed(self) -> None:
        found = detect_tracking_numbers("ups: 1z999aa10123456784")
        assert [t.number for t in found] == ["1Z999AA10123456784"]

    def test_deduplicates_across_case(self) -> None:
        text = "1Z999AA10123456784 and again 1z999aa10123456784"
        assert len(detect_tracking_numbers(text)) == 1

    def test_ordered_by_position(self) -> None:
        text = "First TBA123456789012, then 9400111899223197428490"
        found = detect_tracking_numbers(text)
        assert [t.carrier for t in found] == ["amazon", "usps"]
        assert found[0].number == "TBA123456789012"

    def test_s10_international(self) -> None:
        found = detect_tracking_numbers("Posted as LX123456789CN from Shenzhen")
        assert found == [TrackingNumber(number="LX123456789CN", carrier=None)]

    def test_s10_us_is_usps(self) -> None:
        found = detect_tracking_numbers("Item EA123456789US accepted")
        assert found[0].carrier == "usps"

    def test_labelled_fedex(self) -> None:
        found = detect_tracking_numbers("Tracking number: 123456789012")
        assert found == [TrackingNumber(number="123456789012", carrier="fedex")]

    def test_labelled_unknown_shape(self) -> None:
        found = detect_tracking_numbers("tracking #: ab12cd34ef")
        assert found == [TrackingNumber(number="AB12CD34EF", carrier=None)]

    def test_labelled_word_without_digits_ignored(self) -> None:
        assert detect_tracking_numbers("Track package") == []

    def test_empty_text(self) -> None:
        assert detect_tracking_numbers("") == []


class TestInferCarrier:
    """Tests for infer_carrier()."""

    def test_known_shapes(self) -> None:
        assert infer_carrier("1Z999AA10123456784") == "ups"
        assert infer_carrier("YT1234567890123456") == "yunexpress"
        assert infer_carrier("GM1234567890123456") == "dhl"

    def test_digit_lengths(self) -> None:
        assert infer_carrier("123456789012345") == "fedex"
        assert infer_carrier("1234567890") == "dhl"

    def test_unknown(self) -> None:
        assert infer_carrier("ABC123") is None
