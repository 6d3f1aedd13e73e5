import pytest
from langchain_core.language_models.fake_chat_models import GenericFakeChatModel
from langchain_core.messages import AIMessage, HumanMessage

from ponder.domain.reasoning.reasoning_model import collect_response
from ponder.infrastructure.llm.langchain_model import LangChainReasoningModel, _flatten_content

from conftest import word_count


@pytest.mark.asyncio
async def test_streams_chat_model_text():
    chat_model = GenericFakeChatModel(messages=iter([AIMessage(content="<synthesis>hello world</synthesis>")]))
    model = LangChainReasoningModel(chat_model)
    pieces = []

    async def on_text(piece):
        pieces.append(piece)

    response = await collect_response(model, [HumanMessage(content="say hello")], on_text, word_count)

    assert response.text == "<synthesis>hello world</synthesis>"
    assert "".join(pieces) == response.text
    # no provider usage, so tokens are counted locally
    assert response.usage.input == 2
    assert response.usage.output == 2


def test_flatten_content():
    content = ["a", {"type": "text", "text": "b"}, {"type": "image_url", "image_url": "x"}]
    assert _flatten_content(content) == "ab"
    assert _flatten_content(None) == ""
