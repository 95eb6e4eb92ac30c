from chat_relay.utils.rules import TemplateStore, parse_template_meta


def test_parse_all_sections():
    meta = parse_template_meta(
        "# Prompt Selection\n\nSales helper\nignored second line\n"
        "# Prompt Information\n  Line one  \n\n line two\n"
        "# Prompt Rules\n\n## Tone\n  keep indentation\nlast line   \n\n"
    )
    assert meta.display_name == "Sales helper"
    assert meta.prompt_info == "Line one line two"
    assert meta.rules_only == "## Tone\n  keep indentation\nlast line"


def test_sections_any_order_and_case_insensitive_headers():
    meta = parse_template_meta(
        "preamble is ignored\n"
        "#prompt rules\nrule A\n"
        "#   PROMPT SELECTION\nName\n"
        "# prompt information\ninfo\n"
    )
    assert meta.rules_only == "rule A"
    assert meta.display_name == "Name"
    assert meta.prompt_info == "info"


def test_missing_rules_section_is_empty():
    meta = parse_template_meta("# Prompt Selection\nOnly a name\n")
    assert meta.rules_only == ""
    assert meta.prompt_info == ""


def test_list_modes_uses_metadata_and_falls_back_to_id(rules_dir):
    (rules_dir / "general.txt").write_text("duplicate stem", encoding="utf-8")
    (rules_dir / "notes.json").write_text("{}", encoding="utf-8")

    modes = TemplateStore(rules_dir).list_modes()

    assert [m["id"] for m in modes] == ["general", "plain"]
    assert modes[0] == {
        "id": "general",
        "displayName": "General assistant",
        "promptInfo": "Ask anything about the product.",
    }
    assert modes[1]["displayName"] == "Plain"
    assert modes[1]["promptInfo"] == ""


def test_md_takes_precedence_over_txt(rules_dir):
    (rules_dir / "general.txt").write_text("# Prompt Rules\nfrom txt\n", encoding="utf-8")
    template = TemplateStore(rules_dir).load("general")
    assert template.path.suffix == ".md"


def test_list_modes_skips_unreadable_files(rules_dir):
    (rules_dir / "broken.md").write_bytes(b"\xff\xfe\xfa not utf-8")
    modes = TemplateStore(rules_dir).list_modes()
    assert "broken" not in [m["id"] for m in modes]


def test_load_rejects_path_traversal(rules_dir, tmp_path):
    (tmp_path / "secret.md").write_text("# Prompt Rules\nsecret\n", encoding="utf-8")
    store = TemplateStore(rules_dir)
    assert store.load("../secret") is None
    assert store.load("general/../../secret") is None
    assert store.load("") is None
    assert store.load("unknown") is None


def test_load_rejects_symlink_outside_root(rules_dir, tmp_path):
    outside = tmp_path / "outside.md"
    outside.write_text("# Prompt Rules\nleaked\n", encoding="utf-8")
    (rules_dir / "linked.md").symlink_to(outside)
    assert TemplateStore(rules_dir).load("linked") is None


def test_missing_root_lists_nothing(tmp_path):
    assert TemplateStore(tmp_path / "nope").list_modes() == []
