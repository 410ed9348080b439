"""
Provider adapters.

The reconciliation engine is provider-agnostic; each adapter supplies the pieces that depend on
the target site:

- a replay-buffer reader (`read_replay`) and the interceptor that fills the buffer
- a live-feed reader (`read_live`) and the authoritative final text (`read_final_response`)
- a fragment parser (`new_parser`) and classifier (`classify`)
- a completion-marker predicate (`is_completion_marker`)

plus the page actions the conversation driver and the login state machine need.
"""

import json
import re
from typing import Optional
from urllib.parse import urljoin

from . import constants
from .browser_utils import safe_page_evaluate
from .console import debug_print
from .fragments import Channel, Fragment, ParseResult, SseLineBuffer, sse_data, sse_event_name, sse_json
from .reconcile import LiveFeed


def _interceptor_script(url_patterns: tuple) -> str:
    """
    Page script that tees every text/event-stream response whose URL matches into
    `window.<REPLAY_BUFFER_VAR>` (fetch and XHR), without disturbing the page's own consumer.
    """
    patterns = json.dumps(list(url_patterns))
    buf = constants.REPLAY_BUFFER_VAR
    flag = constants.REPLAY_INTERCEPTOR_VAR
    return f"""
(() => {{
    if (window.{flag}) return;
    window.{flag} = true;
    window.{buf} = window.{buf} || [];
    const patterns = {patterns};
    const matches = (url) => {{
        const value = typeof url === 'string' ? url : (url && url.url) || '';
        return patterns.some(p => value.includes(p));
    }};

    const originalFetch = window.fetch;
    window.fetch = function(...args) {{
        if (!matches(args[0])) return originalFetch.apply(this, args);
        return originalFetch.apply(this, args).then(response => {{
            const contentType = response.headers.get('content-type') || '';
            if (contentType.includes('text/event-stream') && response.body) {{
                const reader = response.clone().body.getReader();
                const decoder = new TextDecoder();
                const pump = () => reader.read().then(({{ done, value }}) => {{
                    if (done) return;
                    window.{buf}.push(decoder.decode(value, {{ stream: true }}));
                    pump();
                }}).catch(() => {{}});
                pump();
            }}
            return response;
        }});
    }};

    const originalOpen = XMLHttpRequest.prototype.open;
    const originalSend = XMLHttpRequest.prototype.send;
    XMLHttpRequest.prototype.open = function(method, url, ...rest) {{
        this.__wcbUrl = url;
        return originalOpen.apply(this, [method, url, ...rest]);
    }};
    XMLHttpRequest.prototype.send = function(...args) {{
        if (matches(this.__wcbUrl)) {{
            let seen = 0;
            this.addEventListener('readystatechange', () => {{
                if (this.readyState !== 3 && this.readyState !== 4) return;
                const contentType = this.getResponseHeader('content-type') || '';
                const text = this.responseText || '';
                if (contentType.includes('text/event-stream') && text.length > seen) {{
                    window.{buf}.push(text.substring(seen));
                    seen = text.length;
                }}
            }});
        }}
        return originalSend.apply(this, args);
    }};
}})();
"""


_DRAIN_SCRIPT = f"""
() => {{
    const buffer = window.{constants.REPLAY_BUFFER_VAR};
    if (!buffer || !buffer.length) return null;
    const data = buffer.join('');
    window.{constants.REPLAY_BUFFER_VAR} = [];
    return data;
}}
"""

_CLEAR_SCRIPT = f"() => {{ window.{constants.REPLAY_BUFFER_VAR} = []; }}"


class ReplayParser:
    """
    Stateful parser over the drained replay buffer.

    Keeps the cumulative text of every fragment source and reports a snapshot after each line
    that touched a source, so arrival order is preserved across channels.
    """

    def __init__(self, adapter: "ProviderAdapter"):
        self.adapter = adapter
        self.lines = SseLineBuffer()
        self.texts: dict[int, str] = {}
        self.types: dict[int, Optional[str]] = {}

    def feed(self, raw: str) -> ParseResult:
        # A partial trailing line stays buffered across quiet polls until its newline arrives.
        return self._parse(self.lines.feed(raw))

    def finish(self) -> ParseResult:
        """Parses whatever is still held back; called once the exchange stops polling."""
        return self._parse(self.lines.flush())

    def _parse(self, lines: list[str]) -> ParseResult:
        result = ParseResult(raw_lines=len(lines))
        for line in lines:
            if self.adapter.is_completion_marker(line):
                result.completed = True
                continue
            for source in self.handle_line(line):
                result.fragments.append(Fragment(source, self.texts.get(source, ""), self.types.get(source)))
        return result

    def handle_line(self, line: str) -> list[int]:
        raise NotImplementedError

    def _next_index(self) -> int:
        return max(self.types) + 1 if self.types else 0

    def _open(self, index: int, hint: Optional[str], text: str = "") -> int:
        self.types[index] = hint
        self.texts[index] = text or ""
        return index

    def _append(self, index: int, text: str) -> None:
        self.texts[index] = self.texts.get(index, "") + text


class ProviderAdapter:
    name = ""
    home_url = ""
    replay_url_patterns: tuple = ()
    login_methods: tuple = ("manual",)

    # Rendered answer / reasoning nodes, generation indicator, composer
    response_selector = ""
    reasoning_selector = ""
    stop_selector = ""
    input_selector = "textarea"

    # --- replay buffer ---

    def interceptor_script(self) -> str:
        return _interceptor_script(self.replay_url_patterns)

    async def read_replay(self, page) -> Optional[str]:
        """Destructive read: whatever is returned is never delivered again."""
        return await safe_page_evaluate(page, _DRAIN_SCRIPT)

    async def clear_replay(self, page) -> None:
        await safe_page_evaluate(page, _CLEAR_SCRIPT)

    def new_parser(self) -> ReplayParser:
        raise NotImplementedError

    def is_completion_marker(self, line: str) -> bool:
        return False

    def classify(self, fragment: Fragment, state) -> Channel:
        hint = (fragment.hint or "").upper()
        if hint in ("THINK", "THINKING", "REASONING"):
            return Channel.REASONING
        if hint:
            return Channel.RESPONSE
        # Untyped text that shows up while only reasoning sources exist is still reasoning.
        channels = set(state.channel_map.values())
        if Channel.REASONING in channels and Channel.RESPONSE not in channels:
            return Channel.REASONING
        return Channel.RESPONSE

    # --- live feed ---

    def live_script(self) -> str:
        return f"""
() => {{
    const textOf = (el) => el ? (el.innerText || el.textContent || '') : '';
    const baseline = window.__wcbBaseline || 0;
    const reasoningSel = {json.dumps(self.reasoning_selector)};
    const answers = Array.from(document.querySelectorAll({json.dumps(self.response_selector)}))
        .filter(el => !reasoningSel || !el.closest(reasoningSel));
    const fresh = answers.length > baseline ? answers[answers.length - 1] : null;
    let reasoning = '';
    if (reasoningSel) {{
        const thoughts = document.querySelectorAll(reasoningSel);
        const lastThought = thoughts.length ? thoughts[thoughts.length - 1] : null;
        if (lastThought && (window.__wcbReasoningBaseline || 0) < thoughts.length) reasoning = textOf(lastThought);
    }}
    const stopSel = {json.dumps(self.stop_selector)};
    const generating = !!(stopSel && document.querySelector(stopSel));
    const input = document.querySelector({json.dumps(self.input_selector)});
    return {{
        response: textOf(fresh),
        reasoning: reasoning,
        generating: generating,
        ready: !generating && !!input,
    }};
}}
"""

    def baseline_script(self) -> str:
        return f"""
() => {{
    const reasoningSel = {json.dumps(self.reasoning_selector)};
    const answers = Array.from(document.querySelectorAll({json.dumps(self.response_selector)}))
        .filter(el => !reasoningSel || !el.closest(reasoningSel));
    window.__wcbBaseline = answers.length;
    window.__wcbReasoningBaseline = reasoningSel ? document.querySelectorAll(reasoningSel).length : 0;
    return answers.length;
}}
"""

    async def read_live(self, page) -> Optional[LiveFeed]:
        data = await safe_page_evaluate(page, self.live_script())
        if not isinstance(data, dict):
            return None
        return LiveFeed(
            response=str(data.get("response") or ""),
            reasoning=str(data.get("reasoning") or ""),
            generating=bool(data.get("generating")),
            ready=bool(data.get("ready")),
        )

    async def read_final_response(self, page) -> Optional[str]:
        live = await self.read_live(page)
        return live.response if live is not None else None

    # --- conversation ---

    conversation_url_patterns: tuple = ()
    conversation_url_template = ""

    def parse_conversation_handle(self, url: str) -> Optional[str]:
        for pattern in self.conversation_url_patterns:
            match = re.search(pattern, url or "")
            if match:
                return match.group(1)
        return None

    async def conversation_handle(self, page) -> Optional[str]:
        return self.parse_conversation_handle(page.url)

    def conversation_url(self, handle: Optional[str]) -> str:
        if not handle:
            return self.home_url
        return self.conversation_url_template.format(handle=handle)

    async def configure(self, page, want_reasoning: bool) -> None:
        pass

    async def send_message(self, page, message: str) -> None:
        box = await page.wait_for_selector(self.input_selector, timeout=constants.PAGE_NAVIGATION_TIMEOUT_MS)
        await box.click()
        await box.fill(message)
        await page.keyboard.press("Enter")

    # --- login ---

    login_url = ""
    login_check_script = "() => !!document.querySelector('textarea')"
    account_script = "() => null"

    async def is_logged_in(self, page) -> bool:
        return bool(await safe_page_evaluate(page, self.login_check_script))

    async def read_account(self, page) -> Optional[str]:
        """The account the page is actually authenticated as (e-mail, phone or name)."""
        value = await safe_page_evaluate(page, self.account_script)
        return str(value).strip() if value else None

    async def perform_credential_login(self, page, account: str, password: str) -> bool:
        raise NotImplementedError(f"{self.name} does not support credential login")

    async def request_qr_code(self, page) -> Optional[str]:
        raise NotImplementedError(f"{self.name} does not support QR-code login")


# ============================================================
# DEEPSEEK
# ============================================================

class DeepSeekParser(ReplayParser):
    """
    DeepSeek streams JSON-patch-like lines:

        data: {"v": {"response": {"fragments": [{"type": "THINK", "content": "..."}]}}}
        data: {"p": "response/fragments", "o": "APPEND", "v": [{"type": "RESPONSE", "content": "He"}]}
        data: {"p": "response/fragments/-1/content", "o": "APPEND", "v": "llo"}
        data: {"v": " world"}                      # continues the last active fragment
        data: {"p": "response", "o": "BATCH", "v": [{"p": "...", "v": ...}, ...]}
        event: finish
    """

    def __init__(self, adapter):
        super().__init__(adapter)
        self.last_active: Optional[int] = None

    def handle_line(self, line: str) -> list[int]:
        data = sse_json(line)
        if not isinstance(data, dict):
            return []
        path = data.get("p")
        op = data.get("o")
        value = data.get("v")
        if path is not None and op == "BATCH" and isinstance(value, list):
            touched: list[int] = []
            for item in value:
                if isinstance(item, dict) and "p" in item and "v" in item:
                    touched.extend(self._apply(item.get("p"), item.get("o"), item.get("v")))
            return touched
        return self._apply(path, op, value)

    def _apply(self, path, op, value) -> list[int]:
        if path is None and isinstance(value, dict):
            response = value.get("response")
            if isinstance(response, dict) and isinstance(response.get("fragments"), list):
                return self._create(response["fragments"])
            return []

        if isinstance(path, str) and (path == "fragments" or path.endswith("/fragments")):
            if op == "APPEND" and isinstance(value, list):
                return self._create(value)
            return []

        if isinstance(path, str) and "fragments/" in path and path.endswith("/content"):
            index = self._fragment_index(path)
            if index is None or index not in self.types or not isinstance(value, str):
                debug_print(f"  ⚠️  deepseek: unknown fragment path {path}")
                return []
            self.last_active = index
            if op == "SET":
                self.texts[index] = value
            else:
                self._append(index, value)
            return [index]

        if path is None and isinstance(value, str) and value:
            index = self.last_active
            if index is None or index not in self.types:
                index = self._open(self._next_index(), None)
                self.last_active = index
            self._append(index, value)
            return [index]

        return []

    def _create(self, fragments: list) -> list[int]:
        touched = []
        for fragment in fragments:
            if not isinstance(fragment, dict) or "type" not in fragment:
                continue
            index = self._open(self._next_index(), str(fragment.get("type")), str(fragment.get("content") or ""))
            debug_print(f"  🧩 deepseek: fragment {index} type={fragment.get('type')}")
            self.last_active = index
            touched.append(index)
        return touched

    def _fragment_index(self, path: str) -> Optional[int]:
        match = re.search(r"fragments/(-?\d+)", path)
        if not match:
            return None
        index = int(match.group(1))
        if index < 0:
            if not self.types:
                return None
            index = sorted(self.types)[index] if -index <= len(self.types) else None
        return index


class DeepSeekAdapter(ProviderAdapter):
    name = "deepseek"
    home_url = "https://chat.deepseek.com/"
    login_url = "https://chat.deepseek.com/sign_in"
    replay_url_patterns = ("/api/v0/chat/completion",)
    login_methods = ("manual", "credentials", "qrcode")

    response_selector = ".ds-markdown"
    reasoning_selector = ".ds-think-content"
    stop_selector = "div.ds-icon-button svg rect"
    input_selector = "textarea"

    conversation_url_patterns = (r"/a/chat/s/([\w-]+)", r"/chat/([\w-]+)")
    conversation_url_template = "https://chat.deepseek.com/a/chat/s/{handle}"

    login_check_script = """
() => {
    const box = document.querySelector('textarea');
    return !!(box && box.offsetParent !== null);
}
"""

    account_script = """
async () => {
    let token = null;
    try {
        const raw = localStorage.getItem('userToken');
        const parsed = raw ? JSON.parse(raw) : null;
        token = parsed && parsed.value ? parsed.value : null;
    } catch (e) {}
    if (!token) return null;
    const resp = await fetch('/api/v0/users/current', {
        headers: { 'authorization': 'Bearer ' + token, 'x-client-platform': 'web' },
    });
    if (!resp.ok) return null;
    const body = await resp.json();
    const data = (body && body.data && (body.data.biz_data || body.data)) || {};
    return data.email || data.mobile_number || (data.id_profile && data.id_profile.name) || null;
}
"""

    _toggle_script = """
(want) => {
    const labels = ['深度思考', 'DeepThink', 'Thinking'];
    const buttons = document.querySelectorAll('button, div[role="button"]');
    for (const btn of buttons) {
        const text = (btn.textContent || '').trim();
        if (!labels.some(l => text.includes(l))) continue;
        const active = btn.classList.contains('ds-toggle-button--active') ||
            btn.classList.contains('active') || btn.classList.contains('selected') ||
            btn.getAttribute('aria-pressed') === 'true';
        if (active !== want) { btn.click(); return 'clicked'; }
        return 'unchanged';
    }
    return 'not-found';
}
"""

    def new_parser(self) -> DeepSeekParser:
        return DeepSeekParser(self)

    def is_completion_marker(self, line: str) -> bool:
        if sse_event_name(line) in ("finish", "close"):
            return True
        data = sse_json(line)
        return (
            isinstance(data, dict)
            and str(data.get("p") or "").endswith("status")
            and data.get("v") == "FINISHED"
        )

    async def configure(self, page, want_reasoning: bool) -> None:
        result = await safe_page_evaluate(page, self._toggle_script, want_reasoning)
        debug_print(f"  🧠 deepseek: reasoning toggle want={want_reasoning} -> {result}")

    async def perform_credential_login(self, page, account: str, password: str) -> bool:
        for label in ("密码登录", "Password"):
            tab = await page.query_selector(f".ds-tab:has-text('{label}')")
            if tab is not None:
                await tab.click()
                break
        account_box = await page.wait_for_selector(
            "input[placeholder*='账号'], input[placeholder*='邮箱'], input[type='email'], input[type='text']",
            timeout=constants.PAGE_NAVIGATION_TIMEOUT_MS,
        )
        await account_box.fill(account)
        password_box = await page.wait_for_selector("input[type='password']", timeout=constants.PAGE_NAVIGATION_TIMEOUT_MS)
        await password_box.fill(password)
        button = await page.query_selector(
            ".ds-sign-up-form__register-button, button:has-text('登录'), button:has-text('Log in')"
        )
        if button is not None:
            await button.click()
        else:
            await password_box.press("Enter")
        try:
            await page.wait_for_selector("textarea", timeout=15000)
        except Exception as e:
            debug_print(f"  ⚠️  deepseek: login did not reach the chat page: {e}")
            return False
        return True

    async def request_qr_code(self, page) -> Optional[str]:
        wechat = await page.query_selector(
            "button:has-text('微信'), button:has-text('WeChat'), .ds-sign-in-with-wechat-block"
        )
        if wechat is not None:
            await wechat.click()
        iframe = await page.wait_for_selector(
            "iframe[src*='weixin'], iframe[src*='wechat'], iframe#wxLogin",
            timeout=constants.PAGE_NAVIGATION_TIMEOUT_MS,
        )
        frame = await iframe.content_frame()
        if frame is None:
            return None
        await frame.wait_for_load_state()
        src = await frame.evaluate(
            """() => {
                const img = document.querySelector('img.js_qrcode_img') ||
                            document.querySelector('img.web_qrcode_img') ||
                            document.querySelector('img[src*="qrcode"]') ||
                            document.querySelector('img');
                return img ? img.src : null;
            }"""
        )
        if not src:
            return None
        return urljoin(frame.url, src)


# ============================================================
# CHATGPT
# ============================================================

_THOUGHTS_BASE = 100


class ChatGPTParser(ReplayParser):
    """
    ChatGPT streams delta-encoded patches:

        data: {"p": "/message/content/parts/0", "o": "append", "v": "Hel"}
        data: {"v": "lo"}                          # same path as the previous line
        data: {"p": "", "o": "patch", "v": [{"p": "/message/content/parts/0", "o": "append", "v": "!"}]}
        data: {"p": "/message/content/thoughts/0/content", "o": "append", "v": "..."}
        data: {"v": {"message": {"content": {"content_type": "text", "parts": ["full text"]}}}}
        data: [DONE]

    Answer parts map to sources 0.., thoughts to sources 100..
    """

    def __init__(self, adapter):
        super().__init__(adapter)
        self.last_path: Optional[str] = None

    def handle_line(self, line: str) -> list[int]:
        data = sse_json(line)
        if not isinstance(data, dict):
            return []
        path = data.get("p")
        op = data.get("o")
        value = data.get("v")

        if op == "patch" or (path is None and isinstance(value, list)):
            touched: list[int] = []
            for item in value if isinstance(value, list) else []:
                if isinstance(item, dict):
                    touched.extend(self._apply(item.get("p"), item.get("o"), item.get("v")))
            return touched
        if path in (None, "") and isinstance(value, dict):
            return self._message_snapshot(value.get("message"))
        if path is None and isinstance(value, str):
            if self.last_path is None:
                return []
            return self._apply(self.last_path, "append", value)
        return self._apply(path, op, value)

    def _apply(self, path, op, value) -> list[int]:
        if not isinstance(path, str):
            return []
        self.last_path = path
        if path.endswith("/thoughts") and isinstance(value, list):
            touched = []
            start = len([i for i in self.types if i >= _THOUGHTS_BASE])
            for offset, thought in enumerate(value):
                if isinstance(thought, dict):
                    index = self._open(_THOUGHTS_BASE + start + offset, "THINK", str(thought.get("content") or ""))
                    touched.append(index)
            return touched
        source = self._source_for(path)
        if source is None or not isinstance(value, str):
            return []
        if source not in self.types:
            self._open(source, "THINK" if source >= _THOUGHTS_BASE else "RESPONSE")
        if op == "replace":
            self.texts[source] = value
        else:
            self._append(source, value)
        return [source]

    def _source_for(self, path: str) -> Optional[int]:
        match = re.search(r"/content/parts/(\d+)$", path)
        if match:
            return int(match.group(1))
        match = re.search(r"/content/thoughts/(\d+)/content$", path)
        if match:
            return _THOUGHTS_BASE + int(match.group(1))
        if path.endswith("/message/reasoning_content"):
            return _THOUGHTS_BASE
        return None

    def _message_snapshot(self, message) -> list[int]:
        if not isinstance(message, dict):
            return []
        author = (message.get("author") or {}).get("role")
        if author not in (None, "assistant"):
            return []
        content = message.get("content") or {}
        touched = []
        if content.get("content_type") == "thoughts":
            for offset, thought in enumerate(content.get("thoughts") or []):
                if isinstance(thought, dict):
                    touched.append(self._open(_THOUGHTS_BASE + offset, "THINK", str(thought.get("content") or "")))
            return touched
        for index, part in enumerate(content.get("parts") or []):
            if isinstance(part, str):
                self.types.setdefault(index, "RESPONSE")
                if len(part) >= len(self.texts.get(index, "")):
                    self.texts[index] = part
                touched.append(index)
        return touched


class ChatGPTAdapter(ProviderAdapter):
    name = "chatgpt"
    home_url = "https://chatgpt.com/"
    login_url = "https://chatgpt.com/auth/login"
    replay_url_patterns = ("/backend-api/conversation", "/backend-api/f/conversation", "/api/conversation")
    login_methods = ("manual",)

    response_selector = "[data-message-author-role='assistant'] .markdown"
    reasoning_selector = ""
    stop_selector = "button[data-testid='stop-button']"
    input_selector = "#prompt-textarea"

    conversation_url_patterns = (r"/c/([\w-]+)",)
    conversation_url_template = "https://chatgpt.com/c/{handle}"

    login_check_script = """
() => {
    const box = document.querySelector('#prompt-textarea');
    const loginButton = document.querySelector("[data-testid='login-button']");
    return !!box && !loginButton;
}
"""

    account_script = """
async () => {
    const resp = await fetch('/api/auth/session');
    if (!resp.ok) return null;
    const body = await resp.json();
    return (body && body.user && (body.user.email || body.user.name)) || null;
}
"""

    _thinking_script = """
(want) => {
    const pill = document.querySelector("button.__composer-pill[aria-label*='思考'], button.__composer-pill[aria-label*='Think']");
    if (!want && pill) {
        const remove = pill.querySelector('.__composer-pill-remove') || pill;
        remove.click();
        return 'removed';
    }
    if (want && !pill) {
        const plus = document.querySelector("button[data-testid='composer-plus-btn']");
        if (!plus) return 'not-found';
        plus.click();
        const items = document.querySelectorAll("div[role='menuitemradio']");
        for (const item of items) {
            const text = item.textContent || '';
            if (text.includes('思考') || text.includes('Think')) { item.click(); return 'enabled'; }
        }
        return 'not-found';
    }
    return 'unchanged';
}
"""

    def new_parser(self) -> ChatGPTParser:
        return ChatGPTParser(self)

    def is_completion_marker(self, line: str) -> bool:
        if sse_data(line) == "[DONE]" or sse_event_name(line) == "done":
            return True
        data = sse_json(line)
        return isinstance(data, dict) and data.get("type") == "message_stream_complete"

    async def configure(self, page, want_reasoning: bool) -> None:
        result = await safe_page_evaluate(page, self._thinking_script, want_reasoning)
        debug_print(f"  🧠 chatgpt: thinking mode want={want_reasoning} -> {result}")


# ============================================================
# REGISTRY
# ============================================================

PROVIDERS: dict[str, ProviderAdapter] = {
    DeepSeekAdapter.name: DeepSeekAdapter(),
    ChatGPTAdapter.name: ChatGPTAdapter(),
}


def get_adapter(provider: str) -> ProviderAdapter:
    try:
        return PROVIDERS[provider]
    except KeyError:
        raise KeyError(f"Unknown provider: {provider}") from None


def resolve_model(model: str) -> tuple[ProviderAdapter, bool]:
    """Map a public model name to (adapter, want_reasoning)."""
    try:
        provider, want_reasoning = constants.MODEL_TABLE[model]
    except KeyError:
        raise KeyError(f"Unknown model: {model}") from None
    return get_adapter(provider), want_reasoning
