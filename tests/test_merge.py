import unittest

from ort_kit.merge import contains, intersection_area, merge_boxes, merge_per_image, union_box
from ort_kit.types import Box


class TestContainment(unittest.TestCase):
    def test_asymmetric(self) -> None:
        big = Box(0, 0, 100, 100, 0.5)
        small = Box(0, 0, 10, 10, 0.5)
        self.assertTrue(contains(big, small))
        self.assertFalse(contains(small, big))

    def test_threshold_on_inner_area(self) -> None:
        big = Box(0, 0, 100, 100, 0.5)
        fragment = Box(90, 10, 12, 10, 0.5)  # 100 of 120 px inside
        self.assertTrue(contains(big, fragment, 0.8))
        self.assertFalse(contains(big, fragment, 0.9))

    def test_zero_area_never_contained(self) -> None:
        self.assertFalse(contains(Box(0, 0, 100, 100, 0.5), Box(10, 10, 0, 5, 0.5)))

    def test_intersection_area(self) -> None:
        self.assertEqual(intersection_area(Box(0, 0, 10, 10, 0), Box(5, 5, 10, 10, 0)), 25)
        self.assertEqual(intersection_area(Box(0, 0, 10, 10, 0), Box(10, 0, 10, 10, 0)), 0.0)

    def test_union_takes_stronger_class(self) -> None:
        u = union_box(Box(0, 0, 10, 10, 0.4, 1), Box(5, 5, 10, 10, 0.7, 3))
        self.assertEqual(u.as_xywh(), (0, 0, 15, 15))
        self.assertEqual(u.confidence, 0.7)
        self.assertEqual(u.class_id, 3)


class TestMergeBoxes(unittest.TestCase):
    def test_fragment_absorbed(self) -> None:
        big = Box(0, 0, 100, 100, 0.6, 0)
        fragment = Box(90, 10, 12, 10, 0.9, 2)
        merged = merge_boxes([big, fragment])
        self.assertEqual(len(merged), 1)
        self.assertEqual(merged[0].as_xywh(), (0, 0, 102, 100))
        self.assertEqual(merged[0].confidence, 0.9)
        self.assertEqual(merged[0].class_id, 2)

    def test_absorbs_container_too(self) -> None:
        fragment = Box(90, 10, 12, 10, 0.9, 2)
        big = Box(0, 0, 100, 100, 0.6, 0)
        merged = merge_boxes([fragment, big])
        self.assertEqual(len(merged), 1)
        self.assertEqual(merged[0].as_xywh(), (0, 0, 102, 100))

    def test_full_containment_takes_outer_bounds(self) -> None:
        inner = Box(10, 10, 20, 20, 0.95, 1)
        outer = Box(0, 0, 50, 50, 0.4, 0)
        merged = merge_boxes([inner, outer], threshold=1.0)
        self.assertEqual(len(merged), 1)
        self.assertEqual(merged[0].as_xywh(), (0, 0, 50, 50))
        self.assertEqual(merged[0].confidence, 0.95)

    def test_disjoint_kept_in_order(self) -> None:
        boxes = [Box(0, 0, 10, 10, 0.5), Box(50, 50, 10, 10, 0.9)]
        merged = merge_boxes(boxes)
        self.assertEqual([b.as_xywh() for b in merged], [(0, 0, 10, 10), (50, 50, 10, 10)])

    def test_grown_box_used_for_later_comparisons(self) -> None:
        a = Box(0, 0, 10, 10, 0.5)
        c = Box(0, 0, 110, 110, 0.5)
        b = Box(100, 100, 10, 10, 0.5)
        self.assertEqual(len(merge_boxes([a, c, b])), 1)

    def test_single_pass(self) -> None:
        # b is only contained once a has grown, and it was already passed over.
        a = Box(0, 0, 10, 10, 0.5)
        b = Box(100, 100, 10, 10, 0.5)
        c = Box(0, 0, 110, 110, 0.5)
        merged = merge_boxes([a, b, c])
        self.assertEqual([m.as_xywh() for m in merged], [(0, 0, 110, 110), (100, 100, 10, 10)])

    def test_inputs_not_mutated(self) -> None:
        big = Box(0, 0, 100, 100, 0.6)
        fragment = Box(90, 10, 12, 10, 0.9)
        merge_boxes([big, fragment])
        self.assertEqual(big.as_xywh(), (0, 0, 100, 100))
        self.assertEqual(big.confidence, 0.6)

    def test_empty(self) -> None:
        self.assertEqual(merge_boxes([]), [])

    def test_per_image_groups(self) -> None:
        tagged = [
            (0, Box(0, 0, 100, 100, 0.5)),
            (1, Box(0, 0, 10, 10, 0.5)),
            (0, Box(0, 0, 10, 10, 0.5)),
        ]
        out = merge_per_image(tagged)
        self.assertEqual(len(out[0]), 1)
        self.assertEqual(len(out[1]), 1)
        self.assertEqual(out[1][0].as_xywh(), (0, 0, 10, 10))


if __name__ == "__main__":
    unittest.main()
