import unittest

import alnomic
from alnomic import model


TABLE = """
table 50120 "Loyalty Account"
{
    Caption = 'Loyalty Account';
    DataClassification = CustomerContent;

    fields
    {
        /// The customer that owns the account.
        field(1; "Customer No."; Code[20])
        {
            TableRelation = Customer;
            NotBlank = true;
        }
        field(2; Points; Integer)
        {
            Editable = false;
            trigger OnValidate()
            begin
                TestField(Points);
            end;
        }
        field(3; Balance; Decimal)
        {
            FieldClass = FlowField;
            CalcFormula = sum("Loyalty Entry".Points where("Customer No." = field("Customer No.")));
        }
        field(4; Tier; Option)
        {
            OptionMembers = Bronze,Silver,Gold;
        }
    }
    keys
    {
        key(PK; "Customer No.") { Clustered = true; }
        key(ByTier; Tier, Points) { }
        key(Empty) { }
    }

    trigger OnInsert()
    begin
    end;
}
"""

PAGE = """
page 50121 "Loyalty Account Card"
{
    PageType = Card;
    SourceTable = "Loyalty Account";

    layout
    {
        area(Content)
        {
            group(General)
            {
                field("Customer No."; Rec."Customer No.") { }
                field(Points; Rec.Points)
                {
                    trigger OnDrillDown()
                    begin
                    end;
                }
            }
        }
    }
    actions
    {
        area(Processing)
        {
            action(Recalculate)
            {
                Caption = 'Recalculate';
                trigger OnAction()
                begin
                end;
            }
        }
    }
}
"""

ENUM = """
enum 50122 "Loyalty Tier"
{
    Extensible = true;

    value(0; Bronze) { Caption = 'Bronze'; }
    value(1; Silver) { Caption = 'Silver'; }
    value(Gold) { }
}
"""


class TableBuilderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.source, self.issues = alnomic.parse_source(TABLE, path="LoyaltyAccount.Table.al")
        self.table = self.source.declarations[0]

    def test_declaration_variant(self) -> None:
        self.assertIsInstance(self.table, model.Table)
        self.assertEqual(self.table.declaration_kind, "table")
        self.assertEqual(self.table.object_id, 50120)
        self.assertEqual(self.table.property_value("caption"), "'Loyalty Account'")
        self.assertIn("oninsert", self.table.triggers)

    def test_fields_and_resolved_properties(self) -> None:
        fields = {f.name: f for f in self.table.fields}
        self.assertEqual(list(fields), ["Customer No.", "Points", "Balance", "Tier"])
        self.assertEqual(fields["Customer No."].table_relation, "Customer")
        self.assertTrue(fields["Customer No."].not_blank)
        self.assertIsNotNone(fields["Customer No."].doc)
        self.assertFalse(fields["Points"].editable)
        self.assertIsNotNone(fields["Points"].on_validate)
        self.assertTrue(fields["Balance"].is_flowfield)
        self.assertTrue(fields["Balance"].calc_formula.startswith("sum("))
        self.assertTrue(fields["Tier"].type.is_option)
        self.assertEqual(fields["Tier"].option_members, ["Bronze", "Silver", "Gold"])

    def test_inconsistent_key_is_dropped_and_reported(self) -> None:
        self.assertEqual([key.name for key in self.table.keys], ["PK", "ByTier"])
        self.assertTrue(self.table.keys[0].clustered)
        self.assertEqual(self.table.keys[1].fields, ["Tier", "Points"])
        self.assertEqual(len(self.issues), 1)
        self.assertIn("declares no fields", self.issues[0].message)

    def test_field_without_type_is_dropped(self) -> None:
        source, issues = alnomic.parse_source(
            "table 1 T\n{\n    fields\n    {\n        field(1; Name)\n        {\n        }\n    }\n}\n"
        )
        self.assertEqual(source.declarations[0].fields, [])
        self.assertEqual(len(issues), 1)
        self.assertEqual(issues[0].span.line, 5)


class PageAndEnumBuilderTests(unittest.TestCase):
    def test_page_fields_and_actions_are_collected_recursively(self) -> None:
        source, issues = alnomic.parse_source(PAGE)
        page = source.declarations[0]
        self.assertEqual(issues, [])
        self.assertIsInstance(page, model.Page)
        self.assertEqual(page.source_table, "Loyalty Account")
        self.assertEqual(page.page_type, "Card")
        self.assertEqual([f.name for f in page.fields], ["Customer No.", "Points"])
        self.assertEqual(page.fields[0].source, 'Rec."Customer No."')
        self.assertIn("ondrilldown", page.fields[1].triggers)
        self.assertEqual([a.name for a in page.actions], ["Recalculate"])
        self.assertEqual(page.actions[0].triggers["onaction"].owner, "Recalculate")

    def test_enum_values(self) -> None:
        source, issues = alnomic.parse_source(ENUM)
        enum = source.declarations[0]
        self.assertIsInstance(enum, model.Enumeration)
        self.assertTrue(enum.extensible)
        self.assertEqual([(v.ordinal, v.name) for v in enum.values], [(0, "Bronze"), (1, "Silver")])
        self.assertEqual(len(issues), 1)

    def test_unsupported_objects_are_skipped_silently(self) -> None:
        source, issues = alnomic.parse_source(
            "report 50130 \"Loyalty Statement\"\n{\n    dataset\n    {\n    }\n}\n"
            "codeunit 50131 \"Loyalty Mgt.\"\n{\n}\n"
        )
        self.assertEqual(issues, [])
        self.assertEqual([d.declaration_kind for d in source.declarations], ["process_unit"])

    def test_extension_objects(self) -> None:
        source, issues = alnomic.parse_source(
            "tableextension 50140 \"Customer Loyalty\" extends Customer\n{\n"
            "    fields\n    {\n"
            "        field(50140; \"Loyalty Points\"; Integer) { }\n"
            "        modify(\"Credit Limit (LCY)\")\n        {\n"
            "            trigger OnAfterValidate()\n            begin\n            end;\n        }\n"
            "    }\n}\n"
        )
        table = source.declarations[0]
        self.assertEqual(issues, [])
        self.assertEqual(table.extends, "Customer")
        self.assertEqual(table.object_type, "tableextension")
        self.assertEqual([f.name for f in table.fields], ["Loyalty Points"])
        self.assertEqual([f.name for f in table.field_modifications], ["Credit Limit (LCY)"])


class DocCommentTests(unittest.TestCase):
    def test_summary_params_and_returns(self) -> None:
        source, _ = alnomic.parse_source(
            "codeunit 1 X\n{\n"
            "    /// <summary>\n    /// Adds points.\n    /// </summary>\n"
            "    /// <param name=\"Points\">How many.</param>\n"
            "    /// <returns>The new balance.</returns>\n"
            "    procedure AddPoints(Points: Integer): Integer\n    begin\n    end;\n}\n"
        )
        proc = source.declarations[0].procedures[0]
        self.assertTrue(proc.is_public)
        self.assertEqual(proc.doc.summary, "Adds points.")
        self.assertEqual(proc.doc.params, ["Points"])
        self.assertEqual(proc.doc.returns, "The new balance.")


if __name__ == "__main__":
    unittest.main()
