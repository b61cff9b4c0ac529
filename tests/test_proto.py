#!/usr/bin/env python3
"""Tests for enum and protobuf field-accessor mining."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from tracecore.ts_adapter import parse_js_ts
from tracecore.scope import ScopeTree
from tracecore.proto import ProtoMiner, field_name


def mine(code):
    return ProtoMiner(ScopeTree(parse_js_ts(code))).mine()


class TestObjectEnums:
    def test_forward_enum(self):
        miner = mine('var Color = { RED: 0, GREEN: 1, BLUE: 2 };')
        assert miner.enums_to_list() == [{'values': {'RED': 0, 'GREEN': 1, 'BLUE': 2}}]

    def test_values_must_be_a_sequence(self):
        assert mine('var Flags = { a: 1, b: 5 };').enums_to_list() == []
        assert mine('var Pair = { a: 1, b: 0, c: "x" };').enums_to_list() == []

    def test_single_property_is_not_an_enum(self):
        assert mine('var One = { only: 0 };').enums_to_list() == []

    def test_reverse_map(self):
        miner = mine('var Names = { 0: "ZERO", 1: "ONE" };')
        assert miner.enums_to_list() == [{'values': {'ZERO': 0, 'ONE': 1}, 'isReverseMap': True}]

    def test_bidirectional(self):
        miner = mine('var Kind = { A: 0, B: 1, 0: "A", 1: "B" };')
        assert miner.enums_to_list() == [{'values': {'A': 0, 'B': 1}}]

    def test_bidirectional_mismatch_is_rejected(self):
        assert mine('var Kind = { A: 0, B: 1, 0: "B", 1: "A" };').enums_to_list() == []


class TestTypeScriptEnums:
    def test_compiled_enum(self):
        miner = mine('''
            var Status;
            (function (Status) {
                Status[Status["Active"] = 0] = "Active";
                Status[Status["Deleted"] = 5] = "Deleted";
            })(Status || (Status = {}));
        ''')
        assert miner.enums_to_list() == [{'values': {'Active': 0, 'Deleted': 5}}]

    def test_label_must_match_name(self):
        miner = mine('E[E["A"] = 0] = "B"; E[E["C"] = 1] = "D";')
        assert miner.enums_to_list() == []


class TestFieldAccessors:
    CODE = '''
        proto.User.prototype.getUserName = function () {
            return jspb.Message.getFieldWithDefault(this, 2, "");
        };
        proto.User.prototype.setUserName = function (v) {
            return jspb.Message.setProto3StringField(this, 2, v);
        };
        x.prototype.ab = function () { return this.array[7]; };
        x.prototype.toString = function () { return "x"; };
        x.prototype.big = function () { return jspb.Message.getField(this, 20000); };
    '''

    def test_accessors(self):
        fields = mine(self.CODE).fields_to_list()
        assert fields == [
            {'fieldNumber': 2, 'fieldName': 'userName', 'accessorName': 'getUserName',
             'minified': False},
            {'fieldNumber': 2, 'fieldName': 'userName', 'accessorName': 'setUserName',
             'minified': False},
            {'fieldNumber': 7, 'fieldName': 'ab', 'accessorName': 'ab', 'minified': True},
        ]

    def test_field_name(self):
        assert field_name('getUserName') == 'userName'
        assert field_name('hasId') == 'id'
        assert field_name('clearTags') == 'tags'
        assert field_name('getter') == 'getter'
        assert field_name('ab') == 'ab'
