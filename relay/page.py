"""
链接页面模块

非升级的普通 HTTP 请求返回一个页面，展示包含身份标识、主机、路径和
传输参数的分享链接，点击即可复制。页面是否需要基本认证由配置决定。
"""

import html
import logging
from urllib.parse import quote

from config import RelayConfig

from .gate import check_basic_auth, reject

logger = logging.getLogger('ws-relay-page')

PAGE_TEMPLATE = """<!DOCTYPE html>
<html>
<head><title>Config</title></head>
<body>
  <p>Click to copy:</p>
  <pre id="configLink" style="background-color:#f0f0f0; padding:10px; cursor:pointer;">{link}</pre>
  <p id="copyStatus"></p>
  <script>
    document.getElementById('configLink').addEventListener('click', function() {{
      navigator.clipboard.writeText(this.textContent).then(() => {{
        document.getElementById('copyStatus').textContent = 'Copied!';
        setTimeout(() => {{ document.getElementById('copyStatus').textContent = ''; }}, 2000);
      }}).catch(err => {{
        document.getElementById('copyStatus').textContent = 'Failed to copy!';
      }});
    }});
  </script>
</body>
</html>
"""


class LinkPage:
    """
    分享链接页面

    Attributes:
        config: 中继配置
    """

    def __init__(self, config: RelayConfig):
        self.config = config

    def build_link(self, host: str) -> str:
        """
        构建分享链接

        Args:
            host: 请求的 Host 头（host:port）

        Returns:
            str: 分享链接
        """
        path = quote(self.config.expected_path, safe='')
        return (
            f"{self.config.link_scheme}://{self.config.uuid}@{host}"
            f"?path={path}&security=none&encryption=none&type=ws#node-ws-{host}"
        )

    def render(self, host: str) -> str:
        """渲染页面 HTML（Host 头来自客户端，需要转义）"""
        return PAGE_TEMPLATE.format(link=html.escape(self.build_link(host)))

    def respond(self, connection, request):
        """
        生成页面响应

        Args:
            connection: websockets 服务端连接
            request: HTTP 请求

        Returns:
            Response: 200 页面或 401 认证质询
        """
        if self.config.page_auth:
            rejection = check_basic_auth(
                request.headers, self.config.web_username, self.config.web_password
            )
            if rejection is not None:
                logger.debug(f"页面认证失败: {rejection.reason}")
                return reject(connection, rejection)

        hosts = request.headers.get_all('Host')
        host = hosts[0] if hosts else ''
        response = connection.respond(200, self.render(host or self.config.host))
        del response.headers['Content-Type']
        response.headers['Content-Type'] = 'text/html; charset=utf-8'
        return response
