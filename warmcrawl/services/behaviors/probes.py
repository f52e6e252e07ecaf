"""Diagnostic crawlers that report what a site can see about the browser."""

from warmcrawl.services.behaviors.base import Behavior, CrawlCapabilities, normalize_url

_JS_FINGERPRINT = """
() => ({
    user_agent: navigator.userAgent,
    webdriver: navigator.webdriver,
    languages: navigator.languages,
    platform: navigator.platform,
    hardware_concurrency: navigator.hardwareConcurrency,
    device_memory: navigator.deviceMemory || null,
    timezone: Intl.DateTimeFormat().resolvedOptions().timeZone,
    screen: {width: screen.width, height: screen.height, color_depth: screen.colorDepth},
    plugins: Array.from(navigator.plugins || []).map(p => p.name),
    webrtc_available: typeof RTCPeerConnection !== 'undefined',
})
"""

# Collects ICE candidate addresses; resolves after `timeout` ms at the latest.
_JS_WEBRTC_IPS = """
(args) => new Promise(resolve => {
    if (typeof RTCPeerConnection === 'undefined') {
        resolve({webrtc_available: false, ips: []});
        return;
    }
    const ips = new Set();
    const pc = new RTCPeerConnection({iceServers: [{urls: args.stun}]});
    const done = () => {
        try { pc.close(); } catch (e) {}
        resolve({webrtc_available: true, ips: Array.from(ips)});
    };
    pc.createDataChannel('');
    pc.onicecandidate = (e) => {
        if (!e.candidate) { done(); return; }
        const m = /([0-9]{1,3}(\\.[0-9]{1,3}){3}|[a-f0-9:]{6,})/i.exec(e.candidate.candidate);
        if (m) ips.add(m[1]);
    };
    pc.createOffer().then(o => pc.setLocalDescription(o)).catch(done);
    setTimeout(done, args.timeout);
})
"""


class FingerprintBehavior(Behavior):
    name = "fp"

    async def crawl(self, item: str, caps: CrawlCapabilities) -> dict:
        url = normalize_url(item or self.recipe.url_template or "about:blank")
        await self._goto(caps, url)
        fingerprint = await caps.page.evaluate(_JS_FINGERPRINT)
        return {"url": caps.page.url, "fingerprint": fingerprint}


class WebRtcBehavior(Behavior):
    """Checks whether WebRTC exposes addresses other than the proxy's."""

    name = "webrtc"

    async def crawl(self, item: str, caps: CrawlCapabilities) -> dict:
        url = normalize_url(item or self.recipe.url_template or "about:blank")
        await self._goto(caps, url)
        report = await caps.page.evaluate(
            _JS_WEBRTC_IPS,
            {
                "stun": self.recipe.selectors.get("stun", "stun:stun.l.google.com:19302"),
                "timeout": int(caps.options.get("webrtc_timeout", 3000)),
            },
        )
        report["leak"] = bool(report.get("ips"))
        report["url"] = caps.page.url
        return report
