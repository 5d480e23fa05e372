import unittest

import alnomic
from alnomic import model
from alnomic.lexer import tokenize
from alnomic.parser import parse, parse_type


CODEUNIT = """
codeunit 50100 "Order Tools"
{
    /// <summary>Releases the order.</summary>
    [EventSubscriber(ObjectType::Codeunit, Codeunit::"Sales-Post", 'OnAfterPostSalesDoc', '', false, false)]
    local procedure Release(var SalesHeader: Record "Sales Header"; Force: Boolean): Boolean
    var
        Counter, Total: Integer;
    begin
        if not Force and (SalesHeader.Status = SalesHeader.Status::Open) then
            exit(false)
        else
            SalesHeader.Modify;
        for Counter := 1 to 10 do
            Total += Counter;
        case SalesHeader."Document Type" of
            SalesHeader."Document Type"::Order, SalesHeader."Document Type"::Invoice:
                Message('Done');
            else
                Error('Unsupported');
        end;
        exit(true);
    end;
}
"""


class LexerTests(unittest.TestCase):
    def test_strings_quoted_identifiers_and_operators(self) -> None:
        tokens, comments, issues = tokenize("Rec.\"No.\" := 'It''s';")
        kinds = [tok.kind for tok in tokens]
        self.assertEqual(kinds, ["ident", "op", "qident", "op", "string", "op", "eof"])
        self.assertEqual(tokens[2].value, "No.")
        self.assertEqual(tokens[4].value, "It's")
        self.assertEqual(tokens[3].text, ":=")
        self.assertEqual(comments, [])
        self.assertEqual(issues, [])

    def test_date_literals_and_ranges(self) -> None:
        tokens, _, _ = tokenize("0D 1..5 0DT 12.5")
        texts = [tok.text for tok in tokens if tok.kind != "eof"]
        self.assertEqual(texts, ["0D", "1", "..", "5", "0DT", "12.5"])

    def test_doc_comments_lead_the_next_token(self) -> None:
        tokens, comments, _ = tokenize("/// <summary>x</summary>\n// plain\nprocedure Foo")
        self.assertEqual(len(comments), 2)
        self.assertEqual([c.kind for c in tokens[0].leading], ["doc", "line"])
        self.assertEqual(tokens[0].span.line, 3)

    def test_directives_are_trivia(self) -> None:
        tokens, _, issues = tokenize("#pragma warning disable AA0005\nbegin\n#if CLEAN\nend")
        self.assertEqual([tok.text for tok in tokens if tok.kind != "eof"], ["begin", "end"])
        self.assertEqual(issues, [])

    def test_unterminated_string_is_reported_and_lexing_continues(self) -> None:
        tokens, _, issues = tokenize("x := 'open\ny := 1;")
        self.assertEqual(len(issues), 1)
        self.assertIn("unterminated string", issues[0].message)
        self.assertIn("y", [tok.text for tok in tokens])


class ParserTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tree = parse(CODEUNIT)

    def test_parses_without_issues(self) -> None:
        self.assertEqual(self.tree.issues, [])
        self.assertEqual(len(self.tree.objects), 1)
        obj = self.tree.objects[0]
        self.assertEqual(obj.keyword, "codeunit")
        self.assertEqual(obj.object_id, 50100)
        self.assertEqual(obj.name, "Order Tools")

    def test_procedure_header(self) -> None:
        code = self.tree.objects[0].codes[0]
        self.assertEqual(code.kind, "procedure")
        self.assertEqual(code.visibility, "local")
        self.assertEqual([p.name for p in code.parameters], ["SalesHeader", "Force"])
        self.assertTrue(code.parameters[0].by_ref)
        self.assertEqual(code.parameters[0].type.subtype, "Sales Header")
        self.assertEqual(code.return_type.name, "Boolean")
        self.assertEqual([v.name for v in code.variables], ["Counter", "Total"])
        self.assertEqual(len(code.attributes), 1)
        self.assertTrue(code.attributes[0].startswith("EventSubscriber"))

    def test_doc_block_attaches_across_attributes(self) -> None:
        code = self.tree.objects[0].codes[0]
        self.assertEqual(len(code.doc), 1)
        self.assertIn("<summary>", code.doc[0].text)

    def test_statement_shapes(self) -> None:
        body = self.tree.objects[0].codes[0].body
        self.assertEqual([stmt.kind for stmt in body], ["if", "for", "case", "exit"])

        if_stmt = body[0]
        self.assertIsInstance(if_stmt.condition, model.Binary)
        self.assertEqual(if_stmt.condition.op, "and")
        self.assertIsInstance(if_stmt.then_branch[0], model.ExitStatement)
        modify = if_stmt.else_branch[0]
        self.assertIsInstance(modify, model.CallStatement)
        self.assertTrue(modify.call.implicit)
        self.assertEqual(modify.call.method, "modify")
        self.assertEqual(modify.call.receiver, "salesheader")

        for_stmt = body[1]
        self.assertIsInstance(for_stmt.body[0], model.Assignment)
        self.assertEqual(for_stmt.body[0].op, "+=")

        case_stmt = body[2]
        self.assertEqual(len(case_stmt.branches), 1)
        self.assertEqual(len(case_stmt.branches[0].values), 2)
        self.assertIsInstance(case_stmt.else_branch[0], model.ErrorStatement)

    def test_precedence_not_binds_tighter_than_and(self) -> None:
        condition = self.tree.objects[0].codes[0].body[0].condition
        self.assertIsInstance(condition.left, model.Unary)
        self.assertEqual(condition.left.op, "not")

    def test_commit_without_parentheses_is_a_call(self) -> None:
        tree = parse("codeunit 1 X { trigger OnRun() begin Commit; end; }")
        stmt = tree.objects[0].codes[0].body[0]
        self.assertIsInstance(stmt, model.CallStatement)
        self.assertEqual(stmt.call.method, "commit")
        self.assertTrue(stmt.call.is_global)

    def test_parse_type_variants(self) -> None:
        tokens, _, _ = tokenize("Record Customer temporary")
        type_ref, label = parse_type(tokens[:-1], "Record Customer temporary")
        self.assertTrue(type_ref.is_record)
        self.assertTrue(type_ref.temporary)
        self.assertEqual(type_ref.subtype, "Customer")
        self.assertIsNone(label)

        text = "Label 'Customer %1 is blocked', Comment = '%1 = No.', Locked = true"
        tokens, _, _ = tokenize(text)
        type_ref, label = parse_type(tokens[:-1], text)
        self.assertTrue(type_ref.is_label)
        self.assertEqual(label.text, "Customer %1 is blocked")
        self.assertEqual(label.comment, "%1 = No.")
        self.assertTrue(label.locked)


class RecoveryTests(unittest.TestCase):
    def test_bad_statement_does_not_hide_the_rest_of_the_file(self) -> None:
        source = """
codeunit 50102 Broken
{
    local procedure A()
    begin
        X := ;
        Commit();
    end;

    local procedure B()
    begin
        repeat
            Commit();
        until true;
    end;
}
"""
        tree = parse(source)
        self.assertEqual(len(tree.issues), 1)
        self.assertEqual(tree.issues[0].span.line, 6)
        codes = tree.objects[0].codes
        self.assertEqual([code.name for code in codes], ["A", "B"])
        self.assertEqual(codes[0].body[0].call.method, "commit")

        diagnostics = alnomic.analyze_source(source, path="Broken.Codeunit.al")
        ids = [diag.rule_id for diag in diagnostics]
        self.assertIn("syntax-error", ids)
        self.assertIn("commit-in-loop", ids)

    def test_garbage_member_is_skipped(self) -> None:
        tree = parse("codeunit 1 X\n{\n    foo bar;\n    local procedure P()\n    begin\n    end;\n}\n")
        self.assertEqual(len(tree.issues), 1)
        self.assertIn("'foo'", tree.issues[0].message)
        self.assertEqual([code.name for code in tree.objects[0].codes], ["P"])

    def test_text_between_objects_is_skipped(self) -> None:
        tree = parse("garbage here\ncodeunit 1 X { }\n")
        self.assertEqual(len(tree.objects), 1)
        self.assertEqual(len(tree.issues), 1)

    def test_missing_semicolon_is_reported_once(self) -> None:
        tree = parse("codeunit 1 X { trigger OnRun() begin Commit() Commit(); end; }")
        self.assertEqual(len(tree.issues), 1)
        self.assertIn("expected ';'", tree.issues[0].message)
        self.assertEqual(len(tree.objects[0].codes[0].body), 2)

    def test_namespace_and_using_are_skipped(self) -> None:
        tree = parse("namespace Contoso.Sales;\nusing Microsoft.Sales.Customer;\ncodeunit 1 X { }\n")
        self.assertEqual(tree.issues, [])
        self.assertEqual(tree.objects[0].name, "X")


if __name__ == "__main__":
    unittest.main()
