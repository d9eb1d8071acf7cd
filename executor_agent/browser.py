"""
Playwright 浏览器控制器 - 执行端的浏览器操作原语

支持的操作：
- navigate: 导航到 URL
- click:    点击元素（可等待后续元素出现）
- fill:     填写输入框
- extract:  提取元素文本 / 属性
- wait:     等待指定毫秒
- custom:   在页面中执行 JavaScript 表达式

snapshot() 在页面内提取结构化信息：
URL、标题、meta description、最多 10 个标题、最多 200 个可见交互元素
（selector / type / label / value）。
"""
import asyncio
from typing import Any, Dict, Optional

from loguru import logger
from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Playwright,
    async_playwright,
)

# 在页面内提取结构化页面信息
PAGE_INFO_JS = r"""
() => {
  const SELECTORS = [
    'button', 'input', 'textarea', 'select', 'a[href]', '[onclick]',
    '[role="button"]', '[role="link"]', '[role="menuitem"]',
    '[tabindex]:not([tabindex="-1"])'
  ];

  const elementType = (el) => {
    if (el.tagName === 'INPUT') return el.type || 'text';
    if (el.tagName === 'BUTTON') return 'button';
    if (el.tagName === 'A') return 'link';
    if (el.tagName === 'SELECT') return 'select';
    if (el.tagName === 'TEXTAREA') return 'textarea';
    if (el.hasAttribute('role')) return el.getAttribute('role');
    if (el.hasAttribute('onclick')) return 'clickable';
    return 'interactive';
  };

  const selectorFor = (el) => {
    const tag = el.tagName.toLowerCase();
    if (el.id) return `#${CSS.escape(el.id)}`;
    if (el.hasAttribute('data-testid')) return `[data-testid="${el.getAttribute('data-testid')}"]`;
    if (el.hasAttribute('data-id')) return `[data-id="${el.getAttribute('data-id')}"]`;
    if (el.name) return `${tag}[name="${el.name}"]`;
    if (el.className && typeof el.className === 'string') {
      const classes = el.className.split(' ').filter(c => c);
      if (classes.length > 0) return `${tag}.${CSS.escape(classes[0])}`;
    }
    const parent = el.parentElement;
    if (parent) {
      const siblings = Array.from(parent.children).filter(c => c.tagName === el.tagName);
      return `${tag}:nth-of-type(${siblings.indexOf(el) + 1})`;
    }
    return tag;
  };

  const labelFor = (el) => {
    if (el.getAttribute('aria-label')) return el.getAttribute('aria-label').trim();
    if (el.tagName === 'BUTTON' || el.tagName === 'A') {
      const text = (el.textContent || '').trim();
      if (text && text.length < 100) return text;
    }
    if (el.id) {
      const label = document.querySelector(`label[for="${CSS.escape(el.id)}"]`);
      if (label) return (label.textContent || '').trim();
    }
    return el.placeholder || el.title || el.alt || '';
  };

  const valueFor = (el) => {
    if (el.tagName === 'INPUT' || el.tagName === 'TEXTAREA') return el.value || '';
    if (el.tagName === 'SELECT') return (el.options[el.selectedIndex] || {}).text || '';
    return '';
  };

  const isVisible = (el) => {
    const style = window.getComputedStyle(el);
    return style.display !== 'none' && style.visibility !== 'hidden' &&
      style.opacity !== '0' && el.offsetWidth > 0 && el.offsetHeight > 0;
  };

  const visible = Array.from(document.querySelectorAll(SELECTORS.join(', '))).filter(isVisible);
  const described = visible.map((el, index) => ({
    index,
    tagName: el.tagName.toLowerCase(),
    type: elementType(el),
    selector: selectorFor(el),
    label: labelFor(el),
    value: valueFor(el)
  }));
  // 超过 200 个时先按 (有标签, 是按钮/输入框) 排序再截取
  const CONTROL_TAGS = ["button", "input", "textarea", "select"];
  const rank = (e) => (e.label ? 0 : 2) + (CONTROL_TAGS.includes(e.tagName) || e.type === "button" ? 0 : 1);
  const kept = described.length > 200
    ? described.slice().sort((a, b) => rank(a) - rank(b) || a.index - b.index).slice(0, 200)
    : described;
  const elements = kept.map(({ index, ...rest }) => rest);

  const headings = [];
  document.querySelectorAll('h1, h2, h3, h4, h5, h6').forEach(h => {
    const text = (h.textContent || '').trim();
    if (text && text.length < 200) headings.push({ level: parseInt(h.tagName.substring(1)), text });
  });

  const meta = document.querySelector('meta[name="description"]');
  return {
    url: window.location.href,
    title: document.title,
    description: meta ? (meta.getAttribute('content') || '') : '',
    headings: headings.slice(0, 10),
    interactiveElements: elements,
    totalElements: visible.length,
    truncated: visible.length > 200 || headings.length > 10
  };
}
"""

EXTRACT_JS = r"""
([selector, attribute, extractText]) => {
  const elements = Array.from(document.querySelectorAll(selector));
  const results = elements.map(el => {
    const data = { tagName: el.tagName };
    if (extractText) data.text = (el.textContent || '').trim();
    if (attribute) {
      data[attribute] = el.getAttribute(attribute);
    } else {
      if (el.href) data.href = el.href;
      if (el.src) data.src = el.src;
      if (el.id) data.id = el.id;
      if (el.className && typeof el.className === 'string') data.className = el.className;
    }
    return data;
  });
  return results;
}
"""

CUSTOM_JS = "(script) => { const value = new Function('return ' + script)(); " \
            "return (value !== null && typeof value === 'object') ? JSON.stringify(value) : value; }"


class BrowserController:
    """浏览器控制器 - 管理 Playwright 浏览器实例和操作"""

    def __init__(self, headless: bool = False) -> None:
        self.headless = headless
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self._lock = asyncio.Lock()

    async def start_browser(self) -> Dict[str, Any]:
        """启动浏览器实例"""
        async with self._lock:
            try:
                if self._browser and self._browser.is_connected():
                    logger.info("✅ [Browser] 浏览器已经在运行")
                    return {"success": True, "message": "Browser already running"}

                logger.info(f"🚀 [Browser] 启动 Chromium 浏览器 (headless={self.headless})...")
                self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(
                    headless=self.headless,
                    args=[
                        "--no-sandbox",
                        "--disable-dev-shm-usage",
                        "--disable-blink-features=AutomationControlled",
                    ],
                )
                self._context = await self._browser.new_context(viewport={"width": 1280, "height": 720})
                self._page = await self._context.new_page()
                logger.info("✅ [Browser] 浏览器启动成功")
                return {"success": True, "message": "Browser started successfully"}
            except PlaywrightError as e:
                logger.error(f"❌ [Browser] 启动失败: {e}")
                return {"success": False, "error": str(e)}

    async def _ensure_page(self) -> bool:
        """确保 page 对象可用，崩溃时自动恢复"""
        if not self._page or not self._context:
            return False
        try:
            await self._page.evaluate("() => true")
            return True
        except PlaywrightError:
            logger.warning("🔄 [Browser] 页面不可用，尝试恢复...")
            try:
                self._page = await self._context.new_page()
                logger.info("✅ [Browser] 新页面创建成功")
                return True
            except PlaywrightError as e:
                logger.error(f"❌ [Browser] 页面恢复失败: {e}")
                return False

    async def execute(self, kind: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        执行单个操作

        Returns:
            {"success": True, "result": ...} 或 {"success": False, "error": "..."}
        """
        handlers = {
            "navigate": self.navigate,
            "click": self.click,
            "fill": self.fill,
            "extract": self.extract,
            "wait": self.wait,
            "custom": self.custom,
        }
        handler = handlers.get(kind)
        if handler is None:
            return {"success": False, "error": f"Unknown action kind: {kind}"}
        if kind != "wait" and not await self._ensure_page():
            return {"success": False, "error": "Page is not available and recovery failed"}

        async with self._lock:
            try:
                logger.info(f"🎯 [Browser] 执行操作: kind={kind}, params={params}")
                result = await handler(params or {})
                return {"success": True, "result": result}
            except (PlaywrightError, ValueError) as e:
                logger.error(f"❌ [Browser] {kind} 失败: {e}")
                return {"success": False, "error": str(e)}

    async def navigate(self, params: Dict[str, Any]) -> Dict[str, Any]:
        url = params["url"]
        await self._page.goto(url, wait_until="domcontentloaded", timeout=30000)
        return {"url": self._page.url, "title": await self._page.title()}

    async def click(self, params: Dict[str, Any]) -> Dict[str, Any]:
        selector = params["selector"]
        timeout = params.get("timeout", 5000)
        locator = self._page.locator(selector).first
        await locator.wait_for(state="visible", timeout=timeout)
        await locator.scroll_into_view_if_needed()
        tag_name = await locator.evaluate("el => el.tagName")
        text = ((await locator.text_content()) or "").strip()[:100]
        await locator.click(timeout=timeout)
        if params.get("waitForSelector"):
            await self._page.wait_for_selector(params["waitForSelector"], timeout=timeout)
        return {"selector": selector, "clicked": True, "tagName": tag_name, "text": text}

    async def fill(self, params: Dict[str, Any]) -> Dict[str, Any]:
        selector = params["selector"]
        value = str(params.get("value", ""))
        locator = self._page.locator(selector).first
        await locator.wait_for(state="visible", timeout=5000)
        if not await locator.is_editable():
            raise ValueError(f"Element is not fillable: {selector}")
        if params.get("clearFirst", True):
            await locator.fill(value)
        else:
            await locator.press_sequentially(value)
        return {"selector": selector, "filled": True, "value": value[:100]}

    async def extract(self, params: Dict[str, Any]) -> Dict[str, Any]:
        selector = params["selector"]
        results = await self._page.evaluate(
            EXTRACT_JS, [selector, params.get("attribute"), params.get("extractText", True)]
        )
        if not results:
            raise ValueError(f"No elements found: {selector}")
        return {
            "selector": selector,
            "count": len(results),
            "results": results[0] if len(results) == 1 else results,
        }

    async def wait(self, params: Dict[str, Any]) -> Dict[str, Any]:
        duration = params.get("duration") or 1000
        await asyncio.sleep(duration / 1000)
        return {"waited": duration}

    async def custom(self, params: Dict[str, Any]) -> Dict[str, Any]:
        value = await self._page.evaluate(CUSTOM_JS, params["script"])
        return {"executed": True, "result": value}

    async def snapshot(self) -> Dict[str, Any]:
        """提取结构化页面信息"""
        if not await self._ensure_page():
            raise ValueError("Browser not started")
        return await self._page.evaluate(PAGE_INFO_JS)

    async def close_browser(self) -> Dict[str, Any]:
        """关闭浏览器"""
        async with self._lock:
            try:
                if self._page:
                    await self._page.close()
                    self._page = None
                if self._context:
                    await self._context.close()
                    self._context = None
                if self._browser:
                    await self._browser.close()
                    self._browser = None
                if self._playwright:
                    await self._playwright.stop()
                    self._playwright = None
                logger.info("✅ [Browser] 浏览器已关闭")
                return {"success": True, "message": "Browser closed successfully"}
            except PlaywrightError as e:
                logger.error(f"❌ [Browser] 关闭失败: {e}")
                return {"success": False, "error": str(e)}

    def is_connected(self) -> bool:
        """检查浏览器是否连接"""
        return self._browser is not None and self._browser.is_connected()
