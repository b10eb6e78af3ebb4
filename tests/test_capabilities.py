from gateway.capabilities import ModelCapabilities, infer_capabilities


def test_modalities_map_to_input_flags():
    caps = infer_capabilities("other", "model-x", input_modalities=["text", "image", "pdf"])
    assert caps.text_input is True
    assert caps.image_input is True
    assert caps.file_input is True
    assert caps.web_search is False


def test_raw_capability_dict_only_counts_truthy_keys():
    caps = infer_capabilities("other", "model-x", raw_capabilities={"vision": True, "tool_use": False})
    assert caps.image_input is True
    assert caps.tool_use is False


def test_tool_keys_do_not_imply_web_search():
    caps = infer_capabilities("other", "model-x", raw_capabilities=["tools", "function_calling"])
    assert caps.tool_use is True
    assert caps.web_search is False


def test_name_rules_are_scoped_to_provider():
    assert infer_capabilities("openai", "gpt-4o").tool_use is True
    assert infer_capabilities("anthropic", "gpt-4o").tool_use is False
    assert infer_capabilities("gemini", "gemini-2.0-flash").web_search is True
    assert infer_capabilities("anthropic", "claude-3-haiku").image_input is True
    assert infer_capabilities("whatever", "llava-vision-7b").image_input is True


def test_nothing_known_means_text_only():
    assert infer_capabilities("other", "mystery") == ModelCapabilities()


def test_round_trip_through_wire_keys():
    caps = ModelCapabilities(image_input=True, tool_use=True)
    data = caps.to_dict()
    assert data == {
        "textInput": True,
        "imageInput": True,
        "fileInput": False,
        "webSearch": False,
        "tool_use": True,
    }
    assert ModelCapabilities.from_dict(data) == caps
    assert ModelCapabilities.from_dict(None) == ModelCapabilities()


def test_merged_over_keeps_base_flags():
    inferred = ModelCapabilities(tool_use=True)
    base = ModelCapabilities(image_input=True, web_search=True)
    merged = inferred.merged_over(base)
    assert merged == ModelCapabilities(image_input=True, web_search=True, tool_use=True)
