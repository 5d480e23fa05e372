"""
Object model builder: syntax tree -> typed declarations.
"""

from __future__ import annotations
from typing import Dict, Iterator, List, Optional, Tuple
import re

from .lexer import Token
from .model import (
    Action,
    Declaration,
    DocComment,
    EnumValue,
    Enumeration,
    Field,
    Key,
    Page,
    PageField,
    Procedure,
    ProcessUnit,
    Property,
    SourceFile,
    Span,
    SyntaxIssue,
    Table,
    Trigger,
)
from .parser import CodeNode, ElementNode, ObjectNode, PropertyNode, parse, parse_type, tokens_text


DECLARATION_CLASSES = {
    "table": Table,
    "tableextension": Table,
    "codeunit": ProcessUnit,
    "page": Page,
    "pageextension": Page,
    "enum": Enumeration,
    "enumextension": Enumeration,
}

_SUMMARY_RE = re.compile(r"<summary>(.*?)</summary>", re.DOTALL | re.IGNORECASE)
_PARAM_RE = re.compile(r"<param\s+name\s*=\s*[\"']([^\"']*)[\"']", re.IGNORECASE)
_RETURNS_RE = re.compile(r"<returns>(.*?)</returns>", re.DOTALL | re.IGNORECASE)


class ModelBuilder:
    """
    Converts one parsed file into a SourceFile. Structurally inconsistent
    elements are dropped and reported through ``issues``.
    """

    def __init__(self, path: str, text: str) -> None:
        self.path = path
        self.text = text
        self.issues: List[SyntaxIssue] = []

    def build(self) -> SourceFile:
        tree = parse(self.text)
        self.issues.extend(tree.issues)
        source = SourceFile(path=self.path, text=self.text, comments=tree.comments)
        for obj in tree.objects:
            declaration = self.build_declaration(obj)
            if declaration is not None:
                source.declarations.append(declaration)
        return source

    # ------------------------------------------------------------------
    # declarations
    # ------------------------------------------------------------------

    def build_declaration(self, obj: ObjectNode) -> Optional[Declaration]:
        cls = DECLARATION_CLASSES.get(obj.keyword)
        if cls is None:
            return None
        declaration = cls(
            object_type=obj.keyword,
            object_id=obj.object_id,
            name=obj.name,
            span=obj.span,
            extends=obj.extends,
            properties=self.build_properties(obj.properties),
            variables=list(obj.variables),
        )
        for code in obj.codes:
            if code.kind == "trigger":
                trigger = self.build_trigger(code)
                declaration.triggers[trigger.key] = trigger
            else:
                declaration.procedures.append(self.build_procedure(code))

        if isinstance(declaration, Table):
            self._fill_table(declaration, obj)
        elif isinstance(declaration, Page):
            self._fill_page(declaration, obj)
        elif isinstance(declaration, Enumeration):
            self._fill_enumeration(declaration, obj)
        return declaration

    def _fill_table(self, table: Table, obj: ObjectNode) -> None:
        for section in _sections(obj, "fields"):
            for element in section.children:
                if element.keyword == "field":
                    built = self.build_field(element)
                    if built is not None:
                        table.fields.append(built)
                elif element.keyword == "modify":
                    modified = self.build_field_modification(element)
                    if modified is not None:
                        table.field_modifications.append(modified)
        for section in _sections(obj, "keys"):
            for element in section.children:
                if element.keyword == "key":
                    key = self.build_key(element)
                    if key is not None:
                        table.keys.append(key)

    def _fill_page(self, page: Page, obj: ObjectNode) -> None:
        page.source_table = _unquote(page.property_value("SourceTable"))
        page.page_type = _unquote(page.property_value("PageType"))
        for section in _sections(obj, "layout"):
            for element in _walk(section, "field"):
                page_field = self.build_page_field(element)
                if page_field is not None:
                    page.fields.append(page_field)
        for section in _sections(obj, "actions"):
            for element in _walk(section, "action"):
                action = self.build_action(element)
                if action is not None:
                    page.actions.append(action)

    def _fill_enumeration(self, enumeration: Enumeration, obj: ObjectNode) -> None:
        prop = enumeration.properties.get("extensible")
        enumeration.extensible = bool(prop and prop.flag)
        for element in obj.children:
            if element.keyword == "value":
                value = self.build_enum_value(element)
                if value is not None:
                    enumeration.values.append(value)

    # ------------------------------------------------------------------
    # elements
    # ------------------------------------------------------------------

    def build_field(self, element: ElementNode) -> Optional[Field]:
        if len(element.args) < 3:
            self.issue("field declaration needs an id, a name and a type", element.span)
            return None
        id_tokens, name_tokens, type_tokens = element.args[0], element.args[1], element.args[2]
        field_id = _integer(id_tokens)
        name = _name(name_tokens)
        if field_id is None or name is None:
            self.issue("field declaration needs an id, a name and a type", element.span)
            return None
        built = Field(
            name=name,
            span=element.span,
            field_id=field_id,
            type=parse_type(type_tokens, self.text)[0],
            quoted=name_tokens[0].kind == "qident",
            properties=self.build_properties(element.properties),
            triggers=self.build_element_triggers(element, name),
            doc=self.build_doc(element.doc),
        )
        _resolve_field_properties(built)
        return built

    def build_field_modification(self, element: ElementNode) -> Optional[Field]:
        name = _name(element.args[0]) if element.args else None
        if name is None:
            self.issue("modify() needs the name of the field it changes", element.span)
            return None
        built = Field(
            name=name,
            span=element.span,
            quoted=element.args[0][0].kind == "qident",
            properties=self.build_properties(element.properties),
            triggers=self.build_element_triggers(element, name),
        )
        _resolve_field_properties(built)
        return built

    def build_key(self, element: ElementNode) -> Optional[Key]:
        name = _name(element.args[0]) if element.args else None
        if name is None:
            self.issue("key declaration has no name", element.span)
            return None
        field_names = [
            _name(part) or tokens_text(part, self.text)
            for part in _split_commas(element.args[1] if len(element.args) > 1 else [])
        ]
        if not field_names:
            self.issue(f"key '{name}' declares no fields", element.span)
            return None
        properties = self.build_properties(element.properties)
        clustered = properties.get("clustered")
        return Key(
            name=name,
            fields=field_names,
            span=element.span,
            clustered=bool(clustered and clustered.flag),
            properties=properties,
        )

    def build_enum_value(self, element: ElementNode) -> Optional[EnumValue]:
        ordinal = _integer(element.args[0]) if element.args else None
        name = _name(element.args[1]) if len(element.args) > 1 else None
        if ordinal is None or name is None:
            self.issue("enum value needs an ordinal and a name", element.span)
            return None
        return EnumValue(
            ordinal=ordinal,
            name=name,
            span=element.span,
            properties=self.build_properties(element.properties),
        )

    def build_page_field(self, element: ElementNode) -> Optional[PageField]:
        name = _name(element.args[0]) if element.args else None
        if name is None:
            self.issue("page field has no name", element.span)
            return None
        source = tokens_text(element.args[1], self.text) if len(element.args) > 1 else ""
        return PageField(
            name=name,
            source=source,
            span=element.span,
            properties=self.build_properties(element.properties),
            triggers=self.build_element_triggers(element, name),
        )

    def build_action(self, element: ElementNode) -> Optional[Action]:
        name = _name(element.args[0]) if element.args else None
        if name is None:
            self.issue("action has no name", element.span)
            return None
        return Action(
            name=name,
            span=element.span,
            properties=self.build_properties(element.properties),
            triggers=self.build_element_triggers(element, name),
        )

    # ------------------------------------------------------------------
    # code members
    # ------------------------------------------------------------------

    def build_trigger(self, code: CodeNode, owner: Optional[str] = None) -> Trigger:
        return Trigger(
            name=code.name,
            span=code.span,
            body=code.body,
            variables=code.variables,
            parameters=code.parameters,
            owner=owner,
        )

    def build_element_triggers(self, element: ElementNode, owner: str) -> Dict[str, Trigger]:
        triggers: Dict[str, Trigger] = {}
        for code in element.codes:
            if code.kind != "trigger":
                self.issue(f"procedures are not allowed inside '{owner}'", code.span)
                continue
            trigger = self.build_trigger(code, owner)
            triggers[trigger.key] = trigger
        return triggers

    def build_procedure(self, code: CodeNode) -> Procedure:
        return Procedure(
            name=code.name,
            span=code.span,
            visibility=code.visibility,  # type: ignore[arg-type]
            parameters=code.parameters,
            return_type=code.return_type,
            return_name=code.return_name,
            doc=self.build_doc(code.doc),
            attributes=code.attributes,
            variables=code.variables,
            body=code.body,
            has_body=code.has_body,
        )

    def build_doc(self, comments) -> Optional[DocComment]:
        if not comments:
            return None
        text = "\n".join(comment.text[3:].strip() for comment in comments)
        summary = _SUMMARY_RE.search(text)
        returns = _RETURNS_RE.search(text)
        return DocComment(
            text=text,
            span=Span.covering(comments[0].span, comments[-1].span),
            summary=summary.group(1).strip() if summary else None,
            params=_PARAM_RE.findall(text),
            returns=returns.group(1).strip() if returns else None,
        )

    def build_properties(self, nodes: List[PropertyNode]) -> Dict[str, Property]:
        return {node.name.lower(): Property(name=node.name, value=node.value, span=node.span) for node in nodes}

    def issue(self, message: str, span: Span) -> None:
        self.issues.append(SyntaxIssue(message, span))


def build_source_file(path: str, text: str) -> Tuple[SourceFile, List[SyntaxIssue]]:
    builder = ModelBuilder(path, text)
    source = builder.build()
    return source, builder.issues


# ----------------------------------------------------------------------
# helpers
# ----------------------------------------------------------------------

def _sections(obj: ElementNode, keyword: str) -> List[ElementNode]:
    return [child for child in obj.children if child.keyword == keyword]


def _walk(element: ElementNode, keyword: str) -> Iterator[ElementNode]:
    """Every descendant element with ``keyword``, in source order."""
    for child in element.children:
        if child.keyword == keyword:
            yield child
        yield from _walk(child, keyword)


def _name(tokens: List[Token]) -> Optional[str]:
    if len(tokens) == 1 and tokens[0].kind in ("ident", "qident"):
        return tokens[0].value
    return None


def _integer(tokens: List[Token]) -> Optional[int]:
    if len(tokens) == 1 and tokens[0].kind == "number" and tokens[0].value.isdigit():
        return int(tokens[0].value)
    return None


def _split_commas(tokens: List[Token]) -> List[List[Token]]:
    parts: List[List[Token]] = [[]]
    for tok in tokens:
        if tok.is_op(","):
            parts.append([])
        else:
            parts[-1].append(tok)
    return [part for part in parts if part]


def _unquote(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


def _resolve_field_properties(built: Field) -> None:
    props = built.properties
    if "fieldclass" in props:
        built.field_class = props["fieldclass"].value.strip()
    if "calcformula" in props:
        built.calc_formula = props["calcformula"].value
    if "tablerelation" in props:
        built.table_relation = props["tablerelation"].value
    if "editable" in props:
        built.editable = props["editable"].flag
    if "notblank" in props:
        built.not_blank = bool(props["notblank"].flag)
    if "optionmembers" in props:
        built.option_members = [member.strip() for member in props["optionmembers"].value.split(",")]
